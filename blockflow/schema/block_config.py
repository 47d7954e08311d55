"""
Static configuration for block types: which sub-blocks a block exposes, which
of them are required, their defaults and visibility conditions.

The serializer consults these configs to extract params from the UI state.
"""

from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

SubBlockMode = Literal["basic", "advanced", "both"]


class StrictModel(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True, validate_assignment=True)


class SubBlockCondition(StrictModel):
    """
    Visibility rule for a sub-block: shown when the value of ``field`` equals
    ``value`` (or is one of ``value`` when a list). ``not`` inverts the match and
    ``and`` adds a second rule that must also hold.
    """

    field: str
    value: Any = None
    not_: bool = Field(default=False, alias="not")
    and_: Optional["SubBlockCondition"] = Field(default=None, alias="and")

    def matches(self, values: Dict[str, Any]) -> bool:
        current = values.get(self.field)
        if isinstance(self.value, list):
            if current is None:
                return False
            matched = current in self.value
        else:
            matched = current == self.value
        if self.not_:
            matched = not matched
        if matched and self.and_ is not None:
            return self.and_.matches(values)
        return matched


class SubBlockConfig(StrictModel):
    id: str
    title: str = ""
    type: str = "short-input"
    mode: SubBlockMode = "both"
    required: bool = False
    value: Any = None
    condition: Optional[SubBlockCondition] = None
    canonical_param_id: Optional[str] = None

    def default_value(self, params: Dict[str, Any]) -> Any:
        if callable(self.value):
            return self.value(dict(params))
        return self.value

    def included_in_mode(self, advanced_mode: bool) -> bool:
        return not (self.mode == "advanced" and not advanced_mode)

    def is_shown(self, values: Dict[str, Any]) -> bool:
        return self.condition is None or self.condition.matches(values)


class BlockConfig(StrictModel):
    type: str
    name: str = ""
    description: str = ""
    category: Literal["blocks", "tools", "triggers"] = "blocks"
    sub_blocks: List[SubBlockConfig] = Field(default_factory=list)
    outputs: Dict[str, Any] = Field(default_factory=dict)

    def sub_block(self, sub_block_id: str) -> Optional[SubBlockConfig]:
        for sub_block in self.sub_blocks:
            if sub_block.id == sub_block_id:
                return sub_block
        return None


SubBlockCondition.model_rebuild()
