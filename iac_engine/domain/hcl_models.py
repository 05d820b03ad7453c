"""
Domain models for parsed HCL configuration.

Property values are a closed tagged union (HclValue) so that every consumer
handles the same fixed set of shapes instead of guessing at raw strings.
"""
from typing import Any, Dict, List, Optional
from dataclasses import dataclass, field
from enum import Enum


class ValueKind(Enum):
    """Kinds of property value the parser can produce."""
    NULL = "null"
    BOOL = "bool"
    INT = "int"
    FLOAT = "float"
    STRING = "string"
    LIST = "list"
    MAP = "map"
    EXPRESSION = "expression"  # Unresolved reference, function call or heredoc body


@dataclass(frozen=True)
class HclValue:
    """A single parsed property value."""
    kind: ValueKind
    value: Any = None

    @classmethod
    def null(cls) -> "HclValue":
        return cls(ValueKind.NULL, None)

    @classmethod
    def boolean(cls, value: bool) -> "HclValue":
        return cls(ValueKind.BOOL, bool(value))

    @classmethod
    def integer(cls, value: int) -> "HclValue":
        return cls(ValueKind.INT, int(value))

    @classmethod
    def number(cls, value: float) -> "HclValue":
        return cls(ValueKind.FLOAT, float(value))

    @classmethod
    def string(cls, value: str) -> "HclValue":
        return cls(ValueKind.STRING, value)

    @classmethod
    def list_of(cls, items: List["HclValue"]) -> "HclValue":
        return cls(ValueKind.LIST, list(items))

    @classmethod
    def map_of(cls, entries: Dict[str, "HclValue"]) -> "HclValue":
        return cls(ValueKind.MAP, dict(entries))

    @classmethod
    def expression(cls, text: str) -> "HclValue":
        return cls(ValueKind.EXPRESSION, text)

    @property
    def is_expression(self) -> bool:
        return self.kind == ValueKind.EXPRESSION

    def to_python(self) -> Any:
        """
        Convert to plain Python data.

        Lists and maps convert recursively; expressions become their
        verbatim source text.
        """
        if self.kind == ValueKind.LIST:
            return [item.to_python() for item in self.value]
        if self.kind == ValueKind.MAP:
            return {key: item.to_python() for key, item in self.value.items()}
        return self.value

    def to_dict(self) -> Dict[str, Any]:
        """Tagged JSON form, preserving the kind of every nested value."""
        if self.kind == ValueKind.LIST:
            inner = [item.to_dict() for item in self.value]
        elif self.kind == ValueKind.MAP:
            inner = {key: item.to_dict() for key, item in self.value.items()}
        else:
            inner = self.value
        return {"kind": self.kind.value, "value": inner}


def _walk(value: Optional[HclValue], part: str) -> Optional[HclValue]:
    if value is None:
        return None
    if value.kind == ValueKind.MAP:
        return value.value.get(part)
    if value.kind == ValueKind.LIST:
        if part.isdigit():
            index = int(part)
            return value.value[index] if index < len(value.value) else None
        # Repeated nested blocks: look into the first one
        for item in value.value:
            if item.kind == ValueKind.MAP:
                return item.value.get(part)
    return None


@dataclass
class HclBlock:
    """
    A labelled top-level block: resource, data source, module or provider.

    start_line and end_line are 1-based and inclusive.
    """
    block_type: str  # "resource" | "data" | "module" | "provider"
    type: str
    name: str
    properties: Dict[str, HclValue]
    start_line: int
    end_line: int
    raw: str = ""

    @property
    def full_name(self) -> str:
        if self.block_type == "data":
            return f"data.{self.type}.{self.name}"
        if self.block_type == "module":
            return f"module.{self.name}"
        return f"{self.type}.{self.name}"

    def value(self, path: str) -> Optional[HclValue]:
        """Return the HclValue at a dotted path, or None."""
        parts = path.split(".")
        current = self.properties.get(parts[0])
        for part in parts[1:]:
            current = _walk(current, part)
        return current

    def get(self, path: str, default: Any = None) -> Any:
        """Return the plain Python value at a dotted path."""
        found = self.value(path)
        if found is None:
            return default
        return found.to_python()

    def has(self, path: str) -> bool:
        return self.value(path) is not None

    def blocks(self, name: str) -> List[Dict[str, Any]]:
        """
        Return a nested block as a list of maps.

        Normalises the single-block and repeated-block shapes.
        """
        found = self.properties.get(name)
        if found is None:
            return []
        if found.kind == ValueKind.MAP:
            return [found.to_python()]
        if found.kind == ValueKind.LIST:
            return [item.to_python() for item in found.value if item.kind == ValueKind.MAP]
        return []

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "block_type": self.block_type,
            "type": self.type,
            "name": self.name,
            "full_name": self.full_name,
            "properties": {key: value.to_python() for key, value in self.properties.items()},
            "start_line": self.start_line,
            "end_line": self.end_line,
        }


@dataclass
class ParsedConfiguration:
    """Output of parsing one configuration text."""
    resources: List[HclBlock] = field(default_factory=list)
    data_sources: List[HclBlock] = field(default_factory=list)
    modules: List[HclBlock] = field(default_factory=list)
    provider_blocks: List[HclBlock] = field(default_factory=list)
    variables: Dict[str, Dict[str, HclValue]] = field(default_factory=dict)
    outputs: Dict[str, Dict[str, HclValue]] = field(default_factory=dict)
    locals: Dict[str, HclValue] = field(default_factory=dict)
    terraform: Dict[str, HclValue] = field(default_factory=dict)
    providers: List[str] = field(default_factory=list)
    parse_warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        def plain(entries: Dict[str, HclValue]) -> Dict[str, Any]:
            return {key: value.to_python() for key, value in entries.items()}

        return {
            "resources": [resource.to_dict() for resource in self.resources],
            "data_sources": [data.to_dict() for data in self.data_sources],
            "modules": [module.to_dict() for module in self.modules],
            "variables": {name: plain(props) for name, props in self.variables.items()},
            "outputs": {name: plain(props) for name, props in self.outputs.items()},
            "locals": plain(self.locals),
            "providers": list(self.providers),
            "parse_warnings": list(self.parse_warnings),
        }
