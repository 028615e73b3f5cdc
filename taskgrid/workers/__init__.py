"""Concrete worker implementations."""

from taskgrid.workers.base import BaseWorker
from taskgrid.workers.callable_worker import CallableWorker
from taskgrid.workers.subprocess_worker import SubprocessWorker

__all__ = ["BaseWorker", "CallableWorker", "SubprocessWorker"]
