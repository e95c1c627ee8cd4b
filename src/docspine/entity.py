"""Entity capability consumed by the document store.

The store never inspects entity fields. It needs five things from an entity
type: where it lives (``table_name``), who it is (``entity_id``), which
shard it belongs to (``shard_keys``), and how to turn it into a JSON document
and back (``encode`` / ``decode``).

Any class satisfying :class:`Entity` works. :class:`Document` is a pydantic
base that satisfies it out of the box::

    class User(Document):
        table: ClassVar[str] = "users_{{accountId}}"

        account_id: str
        name: str
        email: str | None = None

        def shard_keys(self) -> tuple[str, ...]:
            return (self.account_id,)
"""

from __future__ import annotations

from typing import Any, ClassVar, Protocol, TypeVar, runtime_checkable

from pydantic import BaseModel, ConfigDict, ValidationError

from docspine.errors import DecodeError


@runtime_checkable
class Entity(Protocol):
    """Structural contract for anything the store can persist."""

    @classmethod
    def table_name(cls) -> str:
        """Table name template, may contain shard/time placeholders."""
        ...

    @classmethod
    def decode(cls, data: Any) -> Any:
        """Build an instance from a stored document (str, bytes or dict)."""
        ...

    def entity_id(self) -> str: ...

    def shard_keys(self) -> tuple[str, ...]: ...

    def encode(self) -> str:
        """Serialize to a JSON document."""
        ...


E = TypeVar("E", bound=Entity)

D = TypeVar("D", bound="Document")


class Document(BaseModel):
    """Pydantic base implementing :class:`Entity`.

    Subclasses set ``table`` and override ``shard_keys`` when sharded. The
    table defaults to the lower-cased class name.
    """

    model_config = ConfigDict(extra="ignore")

    table: ClassVar[str] = ""

    id: str

    @classmethod
    def table_name(cls) -> str:
        return cls.table or cls.__name__.lower()

    @classmethod
    def decode(cls: type[D], data: Any) -> D:
        try:
            if isinstance(data, (str, bytes, bytearray)):
                return cls.model_validate_json(data)
            return cls.model_validate(data)
        except (ValidationError, ValueError) as e:
            raise DecodeError(f"cannot decode {cls.__name__} document: {e}", cause=e) from e

    def entity_id(self) -> str:
        return self.id

    def shard_keys(self) -> tuple[str, ...]:
        return ()

    def encode(self) -> str:
        return self.model_dump_json()


def entity_type_name(entity: Any) -> str:
    """Short class name used as the change-event addressee."""
    return type(entity).__name__


def first_shard_key(entity: Entity) -> str:
    keys = entity.shard_keys()
    return keys[0] if keys else ""


__all__ = [
    "Entity",
    "Document",
    "E",
    "entity_type_name",
    "first_shard_key",
]
