from __future__ import annotations

import enum
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any, ClassVar, final

import sqlalchemy as sa
from sqlalchemy import orm

from .datastructures import frozendict
from .errors import RelationNotFoundError
from .modifiers import Modifier


class RelationKind(str, enum.Enum):
    BELONGS_TO_ONE = "belongs_to_one"
    HAS_ONE = "has_one"
    HAS_MANY = "has_many"
    MANY_TO_MANY = "many_to_many"

    @property
    def is_one(self) -> bool:
        """True when the relation resolves to a single object instead of a list."""
        return self in (RelationKind.BELONGS_TO_ONE, RelationKind.HAS_ONE)

    @property
    def owns_related(self) -> bool:
        """True when the foreign key lives on the related row."""
        return self in (RelationKind.HAS_ONE, RelationKind.HAS_MANY)


@dataclass(slots=True, frozen=True)
class ThroughTable:
    """Join table of a many-to-many relation.

    ``owner_columns`` reference the owner's ``RelationDescriptor.owner_columns``
    and ``related_columns`` the related ``RelationDescriptor.related_columns``,
    pairwise.  ``extra`` lists join-table columns exposed on related rows.
    """

    table: sa.TableClause
    owner_columns: tuple[str, ...]
    related_columns: tuple[str, ...]
    extra: tuple[str, ...] = ()


@dataclass(slots=True, frozen=True)
class RelationDescriptor:
    """Static description of one relation of an entity type.

    Column pairs are positional: ``owner_columns[i]`` (on the owner table) joins
    ``related_columns[i]`` (on the related table), or the matching through-table
    column for many-to-many relations.
    """

    name: str
    kind: RelationKind
    owner_entity: str
    related_entity: str
    owner_columns: tuple[str, ...]
    related_columns: tuple[str, ...]
    through: ThroughTable | None = None
    modify: tuple[str, ...] = ()

    @property
    def is_self_referential(self) -> bool:
        return self.owner_entity == self.related_entity

    @property
    def extra(self) -> tuple[str, ...]:
        return self.through.extra if self.through is not None else ()


@dataclass(slots=True, frozen=True)
class EntityDescriptor:
    name: str
    table: sa.TableClause
    primary_key: tuple[str, ...]
    relations: frozendict[str, RelationDescriptor] = field(default_factory=frozendict)
    modifiers: frozendict[str, Modifier] = field(default_factory=frozendict)

    @property
    def table_name(self) -> str:
        return self.table.name

    def relation(self, name: str) -> RelationDescriptor:
        """Look up relation *name*, raising ``RelationNotFoundError`` if undeclared."""
        try:
            return self.relations[name]
        except KeyError:
            raise RelationNotFoundError(self.name, name) from None


def entity_name(entity: str | type[Any] | EntityDescriptor) -> str:
    if isinstance(entity, str):
        return entity

    if isinstance(entity, EntityDescriptor):
        return entity.name

    return entity.__name__


@final
class Registry:
    """Singleton holding the entity descriptors of the application.

    Descriptors are keyed by entity name (the mapped class name when built
    with :func:`get_registry`) and every relation target is checked when the
    registry is built, so lookups never have to resolve classes lazily.
    """

    __instance: ClassVar[Registry | None] = None
    _entities: Mapping[str, EntityDescriptor]

    def __new__(cls, entities: Mapping[str, EntityDescriptor] | None = None) -> Registry:
        if cls.__instance is None:
            instance = super().__new__(cls)
            if entities is not None:
                instance.set_entities(entities)

            cls.__instance = instance

        if not getattr(cls.__instance, "_entities", None):
            raise RuntimeError("Registry is not initialized or empty")

        return cls.__instance

    def get(self, entity: str | type[Any]) -> EntityDescriptor | None:
        return self._entities.get(entity_name(entity))

    def __getitem__(self, entity: str | type[Any]) -> EntityDescriptor:
        return self._entities[entity_name(entity)]

    def __contains__(self, entity: object) -> bool:
        return isinstance(entity, (str, type)) and entity_name(entity) in self._entities

    def entity(self, entity: str | type[Any] | EntityDescriptor) -> EntityDescriptor:
        """Return the descriptor for *entity*.

        Raises:
            KeyError: If the entity is not registered.
        """
        if isinstance(entity, EntityDescriptor):
            return entity

        name = entity_name(entity)
        try:
            return self._entities[name]
        except KeyError:
            raise KeyError(f"Entity {name!r} is not registered") from None

    def relation(self, entity: str | type[Any] | EntityDescriptor, name: str) -> RelationDescriptor:
        return self.entity(entity).relation(name)

    @property
    def entities(self) -> Mapping[str, EntityDescriptor]:
        """The underlying name-to-descriptor mapping (read-only)."""
        return self._entities

    def set_entities(self, entities: Mapping[str, EntityDescriptor]) -> None:
        self._entities = entities

    @classmethod
    def reset(cls) -> None:
        """Destroy the singleton, allowing re-initialization (primarily for tests)."""
        cls._entities = frozendict()
        cls.__instance = None


def build_registry(*entities: EntityDescriptor) -> frozendict[str, EntityDescriptor]:
    """Index *entities* by name and check that every relation target is declared.

    Raises:
        ValueError: On duplicate entity names or relations pointing to unknown entities.
    """
    out: dict[str, EntityDescriptor] = {}
    for entity in entities:
        if entity.name in out:
            raise ValueError(f"Entity {entity.name!r} declared twice")
        out[entity.name] = entity

    for entity in out.values():
        for relation in entity.relations.values():
            if relation.related_entity not in out:
                raise ValueError(
                    f"Relation {entity.name}.{relation.name} targets undeclared "
                    f"entity {relation.related_entity!r}"
                )
            if relation.kind is RelationKind.MANY_TO_MANY and relation.through is None:
                raise ValueError(f"Many-to-many relation {entity.name}.{relation.name} needs a through table")

    return frozendict(out)


def _names(columns: Iterable[sa.ColumnElement[Any]]) -> tuple[str, ...]:
    return tuple(column.name for column in columns)  # type: ignore[attr-defined]


def _describe(
    mapper: orm.Mapper[Any], relationship: orm.RelationshipProperty[Any]
) -> RelationDescriptor:
    owner = mapper.class_.__name__
    related = relationship.mapper.class_.__name__
    modify = tuple(relationship.info.get("modify", ()))

    if relationship.direction is orm.MANYTOMANY:
        secondary = relationship.secondary
        assert secondary is not None
        owner_pairs = relationship.synchronize_pairs
        related_pairs = relationship.secondary_synchronize_pairs
        through = ThroughTable(
            table=secondary,  # type: ignore[arg-type]
            owner_columns=_names(dest for _, dest in owner_pairs),
            related_columns=_names(dest for _, dest in related_pairs),
            extra=tuple(relationship.info.get("extra", ())),
        )
        return RelationDescriptor(
            name=relationship.key,
            kind=RelationKind.MANY_TO_MANY,
            owner_entity=owner,
            related_entity=related,
            owner_columns=_names(source for source, _ in owner_pairs),
            related_columns=_names(source for source, _ in related_pairs),
            through=through,
            modify=modify,
        )

    pairs = relationship.local_remote_pairs or ()
    if relationship.direction is orm.MANYTOONE:
        kind = RelationKind.BELONGS_TO_ONE
    elif relationship.direction is orm.ONETOMANY:
        kind = RelationKind.HAS_MANY if relationship.uselist else RelationKind.HAS_ONE
    else:
        raise ValueError(f"Unsupported relationship direction {relationship.direction!r}")

    return RelationDescriptor(
        name=relationship.key,
        kind=kind,
        owner_entity=owner,
        related_entity=related,
        owner_columns=_names(local for local, _ in pairs),
        related_columns=_names(remote for _, remote in pairs),
        modify=modify,
    )


def get_registry(base: type[orm.DeclarativeBase]) -> frozendict[str, EntityDescriptor]:
    """Build entity descriptors by introspecting every mapper of a declarative base.

    View-only relationships are skipped since they cannot be written through.
    Relationship ``info`` may carry ``"extra"`` (through-table columns to expose
    on related rows) and ``"modify"`` (default modifier names).  Named
    modifiers are read from a ``__graph_modifiers__`` mapping on the model.

    Args:
        base: SQLAlchemy declarative base class.

    Returns:
        Frozen dictionary mapping entity names to their descriptors.

    Raises:
        AssertionError: If base is not a subclass of orm.DeclarativeBase.
    """
    assert orm.DeclarativeBase in getattr(base, "__bases__", ()), (
        "base must be a subclass of orm.DeclarativeBase"
    )

    descriptors = []
    for mapper in base.registry.mappers:
        relations = {
            relationship.key: _describe(mapper, relationship)
            for relationship in mapper.relationships
            if not relationship.viewonly
        }
        descriptors.append(
            EntityDescriptor(
                name=mapper.class_.__name__,
                table=mapper.local_table,  # type: ignore[arg-type]
                primary_key=_names(mapper.primary_key),
                relations=frozendict(relations),
                modifiers=frozendict(getattr(mapper.class_, "__graph_modifiers__", {})),
            )
        )

    return build_registry(*descriptors)


def init_registry(entities: Mapping[str, EntityDescriptor]) -> Registry:
    """Install *entities* as the global registry.

    Example:
        >>> from myapp.models import Base
        >>> init_registry(get_registry(Base))
    """
    Registry.reset()
    return Registry(entities)
