"""
Type-safe wrapper classes for Discord identifiers.

Discord snowflakes are 64-bit integers but are persisted as strings so the
stored JSON records round-trip without precision loss. Every identifier the
scheduler handles (guilds, users, channels, messages) goes through one of the
wrappers below, which keeps a ``GuildID`` from ever being compared equal to a
``UserID`` with the same digits.
"""

from __future__ import annotations

from typing import TypeVar, Union

import discord

SnowflakeT = TypeVar("SnowflakeT", bound="Snowflake")


class Snowflake:
    """
    Base wrapper for a Discord snowflake ID.

    Attributes:
        _value (str): The snowflake ID stored as a string for JSON parity.

    Example:
        >>> uid = UserID.from_int(123456789012345678)
        >>> uid.to_int()
        123456789012345678
        >>> str(uid)
        '123456789012345678'
        >>> UserID("123456789012345678") == 123456789012345678
        True
    """

    __slots__ = ("_value",)

    def __init__(self, value: Union[str, int, "Snowflake"]) -> None:
        """
        Initialize from a string, int, or another wrapper of the same kind.

        Raises:
            ValueError: If the value cannot be converted to a valid snowflake.
        """
        if isinstance(value, Snowflake):
            if type(value) is not type(self):
                raise ValueError(f"Cannot create {type(self).__name__} from {type(value).__name__}")
            self._value = value._value
        elif isinstance(value, bool):
            raise ValueError(f"Cannot create {type(self).__name__} from bool")
        elif isinstance(value, int):
            if value < 0:
                raise ValueError(f"Snowflakes are non-negative, got {value}")
            self._value = str(value)
        elif isinstance(value, str):
            self._value = str(int(value.strip()))
        else:
            raise ValueError(f"Cannot create {type(self).__name__} from {type(value).__name__}: {value}")

    @classmethod
    def from_int(cls: type[SnowflakeT], value: int) -> SnowflakeT:
        """Create the wrapper from an integer snowflake."""
        return cls(value)

    @classmethod
    def from_object(cls: type[SnowflakeT], obj: discord.abc.Snowflake) -> SnowflakeT:
        """Create the wrapper from any py-cord object exposing ``.id``."""
        return cls(obj.id)

    def to_int(self) -> int:
        """Convert to an integer for Discord API calls."""
        return int(self._value)

    def __str__(self) -> str:
        return self._value

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self._value!r})"

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Snowflake):
            return type(self) is type(other) and self._value == other._value
        if isinstance(other, str):
            return self._value == other
        if isinstance(other, int) and not isinstance(other, bool):
            return self._value == str(other)
        return NotImplemented

    def __lt__(self, other: "Snowflake") -> bool:
        if not isinstance(other, Snowflake):
            return NotImplemented
        return self.to_int() < other.to_int()

    def __hash__(self) -> int:
        return hash((type(self).__name__, self._value))


class UserID(Snowflake):
    """Snowflake of a Discord user or guild member."""

    __slots__ = ()


class GuildID(Snowflake):
    """Snowflake of a Discord guild (server)."""

    __slots__ = ()


class ChannelID(Snowflake):
    """Snowflake of a Discord text channel or thread."""

    __slots__ = ()


class MessageID(Snowflake):
    """Snowflake of a Discord message."""

    __slots__ = ()
