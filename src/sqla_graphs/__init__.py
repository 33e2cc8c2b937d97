"""Relation graphs for SQLAlchemy.

sqla_graphs loads nested object trees described by relation expressions
(``"children.[pets, movies.actors]"``) and writes nested object graphs back
as an ordered plan of inserts, patches, deletes, relates and unrelates.
Initialize the ``Registry`` singleton at startup with your declarative base,
then call ``fetch_graph``/``resolve`` to load and ``upsert_graph``/
``insert_graph`` to write, all against a transaction-scoped ``Queryable``.
"""

from ._version import __version__, __version_tuple__
from .datastructures import frozendict
from .eager import DEFAULT_BATCH_SIZE, DEFAULT_CONCURRENCY, RelationFetcher, fetch_graph, resolve
from .errors import (
    CyclicGraphError,
    DuplicateAliasError,
    DuplicateIdError,
    GraphError,
    InvalidGraphError,
    InvalidRecursionError,
    ModifierNotFoundError,
    NotFoundError,
    ParseError,
    PlanExecutionError,
    ReferenceNotAllowedError,
    RelationNotFoundError,
    UnresolvedReferenceError,
)
from .executor import OperationHook, PlanExecutor, execute_plan
from .expression import RelationExpression, expression_cache_clear, expression_cache_info, parse, validate
from .graph import GraphIndex, GraphNode, NodeState, build_graph, classify, index_graph
from .join import (
    DEFAULT_RECURSION_LIMIT,
    ID_LENGTH_LIMIT,
    JoinBuilder,
    JoinResultParser,
    build_join,
    join_cache_clear,
    join_cache_info,
)
from .modifiers import Modifier, ModifierRegistry
from .operations import Delete, Insert, Operation, OperationPlan, Patch, Relate, Unrelate
from .options import UpsertOptions
from .planner import plan_graph
from .queryable import Queryable, SessionQueryable
from .references import PENDING, ReferenceTable, references_in
from .registry import (
    EntityDescriptor,
    Registry,
    RelationDescriptor,
    RelationKind,
    ThroughTable,
    build_registry,
    get_registry,
    init_registry,
)
from .tools import RESERVED_PREFIX, add_conditions, order_by
from .upsert import insert_graph, plan_upsert, upsert_graph


__all__ = (
    "DEFAULT_BATCH_SIZE",
    "DEFAULT_CONCURRENCY",
    "DEFAULT_RECURSION_LIMIT",
    "ID_LENGTH_LIMIT",
    "PENDING",
    "RESERVED_PREFIX",
    "CyclicGraphError",
    "Delete",
    "DuplicateAliasError",
    "DuplicateIdError",
    "EntityDescriptor",
    "GraphError",
    "GraphIndex",
    "GraphNode",
    "Insert",
    "InvalidGraphError",
    "InvalidRecursionError",
    "JoinBuilder",
    "JoinResultParser",
    "Modifier",
    "ModifierNotFoundError",
    "ModifierRegistry",
    "NodeState",
    "NotFoundError",
    "Operation",
    "OperationHook",
    "OperationPlan",
    "ParseError",
    "Patch",
    "PlanExecutionError",
    "PlanExecutor",
    "Queryable",
    "ReferenceNotAllowedError",
    "ReferenceTable",
    "Registry",
    "Relate",
    "RelationDescriptor",
    "RelationExpression",
    "RelationFetcher",
    "RelationKind",
    "RelationNotFoundError",
    "SessionQueryable",
    "ThroughTable",
    "Unrelate",
    "UnresolvedReferenceError",
    "UpsertOptions",
    "__version__",
    "__version_tuple__",
    "add_conditions",
    "build_graph",
    "build_join",
    "build_registry",
    "classify",
    "execute_plan",
    "expression_cache_clear",
    "expression_cache_info",
    "fetch_graph",
    "frozendict",
    "get_registry",
    "index_graph",
    "init_registry",
    "insert_graph",
    "join_cache_clear",
    "join_cache_info",
    "order_by",
    "parse",
    "plan_graph",
    "plan_upsert",
    "references_in",
    "resolve",
    "upsert_graph",
    "validate",
)
