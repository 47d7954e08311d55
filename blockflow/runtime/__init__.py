from blockflow.runtime.execution import run_workflow
from blockflow.runtime.executor import Executor, execute
from blockflow.runtime.services import InMemoryLoggingSession, NullLoggingSession

__all__ = [
    "Executor",
    "execute",
    "run_workflow",
    "InMemoryLoggingSession",
    "NullLoggingSession",
]
