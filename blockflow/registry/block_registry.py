"""
Registry of block-type configurations (sub-blocks, defaults, categories).

The serializer rejects any block whose type has no registered config.
Container types are always known and need no config.
"""

from __future__ import annotations

from typing import Dict, Iterable, List, MutableMapping, Optional

from blockflow.schema.block_config import BlockConfig


class BlockConfigNotFoundError(KeyError):
    """Raised when attempting to access an unknown block type."""


class BlockConfigRegistry:
    def __init__(self, initial: MutableMapping[str, BlockConfig] | None = None) -> None:
        self._configs: Dict[str, BlockConfig] = dict(initial or {})

    def register(self, block_config: BlockConfig) -> None:
        self._configs[block_config.type] = block_config

    def register_many(self, block_configs: Iterable[BlockConfig]) -> None:
        for block_config in block_configs:
            self.register(block_config)

    def get(self, block_type: str) -> BlockConfig:
        try:
            return self._configs[block_type]
        except KeyError as exc:
            raise BlockConfigNotFoundError(f"Block type '{block_type}' is not registered") from exc

    def maybe_get(self, block_type: str) -> Optional[BlockConfig]:
        return self._configs.get(block_type)

    def __contains__(self, block_type: object) -> bool:
        return block_type in self._configs

    def types(self) -> List[str]:
        return sorted(self._configs)
