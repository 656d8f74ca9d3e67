"""Topic to table routing"""

from types import MappingProxyType
from typing import Dict, Mapping, Optional

from ..config.errors import ConfigurationError


class DestinationMapping:
    """
    Read-only topic -> table map
    A topic without an explicit entry is stored in the table of the same name
    """

    def __init__(self, mapping: Optional[Mapping[str, str]] = None):
        entries: Dict[str, str] = {}
        for topic, table in (mapping or {}).items():
            if not isinstance(topic, str) or not isinstance(table, str) or not table:
                raise ConfigurationError(f"Invalid topic_table_map entry: {topic!r} -> {table!r}")
            entries[topic] = table
        self._mapping = MappingProxyType(entries)

    def resolve(self, topic: str) -> str:
        return self._mapping.get(topic, topic)

    @property
    def mapping(self) -> Mapping[str, str]:
        return self._mapping

    def __contains__(self, topic: str) -> bool:
        return topic in self._mapping

    def __len__(self) -> int:
        return len(self._mapping)
