"""Registry identifiers and boundary records."""

from __future__ import annotations

import ipaddress
import re
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Union

NUMERIC = "numeric"
OPAQUE = "opaque"

_INTEGER_LITERAL = re.compile(r"[+-]?\d+")


@dataclass(frozen=True)
class Identifier:
    """Registry key: either a number or an opaque string.

    The kind takes part in equality, so ``Identifier.numeric(1)`` and
    ``Identifier.opaque("1")`` are distinct keys.
    """

    kind: str
    value: Union[int, str]

    def __post_init__(self) -> None:
        if self.kind == NUMERIC:
            if isinstance(self.value, bool) or not isinstance(self.value, int):
                raise ValueError(f"Numeric identifier requires an int; got {self.value!r}")
        elif self.kind == OPAQUE:
            if not isinstance(self.value, str) or not self.value:
                raise ValueError(f"Opaque identifier requires a non-empty string; got {self.value!r}")
        else:
            raise ValueError(f"Unknown identifier kind: {self.kind!r}")

    @classmethod
    def numeric(cls, value: int) -> "Identifier":
        return cls(NUMERIC, value)

    @classmethod
    def opaque(cls, value: str) -> "Identifier":
        return cls(OPAQUE, value)

    @classmethod
    def parse(cls, raw: Any) -> "Identifier":
        """Build an identifier from a path segment, JSON value, or existing identifier."""

        if isinstance(raw, Identifier):
            return raw
        if isinstance(raw, bool):
            raise ValueError("Identifiers cannot be booleans")
        if isinstance(raw, int):
            return cls.numeric(raw)
        if isinstance(raw, str):
            text = raw.strip()
            if not text:
                raise ValueError("Identifiers cannot be empty")
            if _INTEGER_LITERAL.fullmatch(text):
                return cls.numeric(int(text))
            return cls.opaque(text)
        raise ValueError(f"Unsupported identifier type: {type(raw).__name__}")

    @property
    def is_numeric(self) -> bool:
        return self.kind == NUMERIC

    def to_json(self) -> Union[int, str]:
        return self.value

    def __str__(self) -> str:
        return str(self.value)


def validate_address(value: Any) -> str:
    """Return the canonical dotted form of an IPv4 address."""

    try:
        return str(ipaddress.IPv4Address(str(value).strip()))
    except ipaddress.AddressValueError as exc:
        raise ValueError(f"Invalid IPv4 address: {value!r}") from exc


@dataclass(frozen=True)
class BulbRecord:
    """Bulb description exchanged with callers and the persistent store."""

    name: str
    address: str
    id: Optional[Identifier] = None
    power: Optional[bool] = None
    mac: Optional[str] = None
    online: Optional[bool] = None

    def __post_init__(self) -> None:
        if not isinstance(self.name, str) or not self.name.strip():
            raise ValueError("Bulb name must be a non-empty string")
        object.__setattr__(self, "address", validate_address(self.address))
        if self.mac is not None:
            object.__setattr__(self, "mac", self.mac.lower())

    @classmethod
    def from_mapping(cls, value: Mapping[str, Any]) -> "BulbRecord":
        if "name" not in value or "address" not in value:
            raise ValueError("Bulb records require 'name' and 'address' fields")
        raw_id = value.get("id")
        power = value.get("initial_power", value.get("power"))
        if power is not None and not isinstance(power, bool):
            raise ValueError("Bulb power must be a boolean")
        mac = value.get("mac")
        return cls(
            name=str(value["name"]),
            address=str(value["address"]),
            id=Identifier.parse(raw_id) if raw_id is not None else None,
            power=power,
            mac=str(mac) if mac else None,
        )

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id.to_json() if self.id is not None else None,
            "name": self.name,
            "address": self.address,
            "power": self.power,
            "mac": self.mac,
            "online": self.online,
        }
