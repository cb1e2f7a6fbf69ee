"""
Abstract base class for job handlers.

Handlers are the code a promoted job eventually runs (send an email, sync a
calendar event, ...). They live in the host application and are registered
under a job name in jobs/registry.py. The worker calls handler.run(payload)
without knowing which handler it is.
"""

from abc import ABC, abstractmethod


class AbstractJobHandler(ABC):

    @abstractmethod
    def run(self, payload: dict) -> dict:
        """
        Execute the job.

        Args:
            payload: the job record's payload, exactly as submitted.

        Returns:
            dict with results — stored in JobRecord.result.

        Raises:
            Any exception → the worker's retry handling takes over.
        """
        ...

    @property
    @abstractmethod
    def job_name(self) -> str:
        """Name the handler is registered under (e.g. 'verifyEmail')."""
        ...


class FunctionHandler(AbstractJobHandler):
    """Adapts a plain function to the handler interface."""

    def __init__(self, job_name: str, func):
        self._job_name = job_name
        self._func = func

    def run(self, payload: dict) -> dict:
        return self._func(payload) or {}

    @property
    def job_name(self) -> str:
        return self._job_name
