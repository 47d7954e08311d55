"""
Built-in block behaviors and their configurations.
"""

from __future__ import annotations

from blockflow.handlers import condition, response, router, starter, variables, wait
from blockflow.registry.behavior_registry import BehaviorRegistry
from blockflow.registry.block_registry import BlockConfigRegistry

BUILTIN_MODULES = (starter, condition, router, response, wait, variables)


def default_block_registry() -> BlockConfigRegistry:
    registry = BlockConfigRegistry()
    registry.register_many(module.BLOCK_CONFIG for module in BUILTIN_MODULES)
    return registry


def default_behavior_registry() -> BehaviorRegistry:
    registry = BehaviorRegistry()
    for module in BUILTIN_MODULES:
        registry.register(module.BEHAVIOR)
    return registry


__all__ = ["default_behavior_registry", "default_block_registry"]
