"""
Public entrypoints for compiling block graphs into execution plans and
running them.
"""

from __future__ import annotations

from blockflow.compiler.merge import merge_subblock_state
from blockflow.compiler.parse import parse_workflow_state
from blockflow.compiler.serializer import Serializer, serialize
from blockflow.runtime.execution import run_workflow
from blockflow.runtime.executor import Executor, execute

__all__ = [
    "Executor",
    "Serializer",
    "execute",
    "merge_subblock_state",
    "parse_workflow_state",
    "run_workflow",
    "serialize",
]
