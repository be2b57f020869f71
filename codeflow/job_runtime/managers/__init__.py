"""Data access managers for the job runtime.

Each module provides async functions that encapsulate store access and the
business rules around it.  Managers accept a store (or the queue) as a
parameter and raise domain exceptions from ``codeflow.job_runtime.errors``,
never HTTP exceptions -- that translation is the API layer's responsibility.
"""
