"""Node registry: maps type keys to executors.

Two catalogs coexist. The declarative catalog holds ``BaseExecutor``
subclasses that describe themselves; the legacy catalog holds plain
callables with metadata supplied at registration. Entries are a tagged union
(``LegacyEntry`` | ``DeclarativeEntry``) dispatched on ``kind``.

Lookup order for a type key: aliases, then the declarative catalog, then the
legacy catalog.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Literal

import jsonschema

from nodeflow.core.errors import NodeTypeNotFound
from nodeflow.core.executors import BaseExecutor, ExecutorDefinition, NodeInfo

if TYPE_CHECKING:
    from nodeflow.core.graph_schema import NodeSpec, WorkflowDefinition

logger = logging.getLogger(__name__)

_STRIP_SUFFIXES = ("-trigger", "-action")


@dataclass
class LegacyEntry:
    type_key: str
    impl: Callable[..., Any]
    category: str = "legacy"
    version: int | list[int] = 1
    display_name: str = ""
    description: str = ""
    config_schema: dict[str, Any] | None = None
    kind: Literal["legacy"] = field(default="legacy", init=False)

    @property
    def target_version(self) -> int:
        if isinstance(self.version, list):
            return max(self.version) if self.version else 1
        return self.version


@dataclass
class DeclarativeEntry:
    type_key: str
    impl: BaseExecutor
    definition: ExecutorDefinition
    kind: Literal["declarative"] = field(default="declarative", init=False)

    @property
    def category(self) -> str:
        return self.definition.category

    @property
    def version(self) -> int | list[int]:
        return self.definition.version

    @property
    def display_name(self) -> str:
        return self.definition.display_name

    @property
    def description(self) -> str:
        return self.definition.description

    @property
    def config_schema(self) -> dict[str, Any] | None:
        return self.definition.config_schema

    @property
    def target_version(self) -> int:
        return self.definition.target_version


ExecutorEntry = LegacyEntry | DeclarativeEntry


def candidate_type_keys(node: NodeSpec) -> list[str]:
    """Ordered, de-duplicated type keys to try for a node.

    Subtype first, then type, then each with a ``-trigger`` / ``-action``
    suffix stripped.
    """
    primary = [k for k in (node.subtype, node.type) if k]
    candidates: list[str] = []
    for key in primary + [_strip_suffix(k) for k in primary]:
        if key and key not in candidates:
            candidates.append(key)
    return candidates


def _strip_suffix(key: str) -> str:
    for suffix in _STRIP_SUFFIXES:
        if key.endswith(suffix):
            return key[: -len(suffix)]
    return key


class NodeRegistry:
    """Catalog of executors, built once per process and passed explicitly."""

    def __init__(self):
        self._declarative: dict[str, DeclarativeEntry] = {}
        self._legacy: dict[str, LegacyEntry] = {}
        self._aliases: dict[str, str] = {}

    # ========== Registration ==========

    def register_legacy(
        self,
        type_key: str,
        impl: Callable[..., Any],
        *,
        category: str = "legacy",
        version: int | list[int] = 1,
        display_name: str | None = None,
        description: str = "",
        config_schema: dict[str, Any] | None = None,
    ) -> LegacyEntry:
        if not callable(impl):
            raise TypeError(f"Legacy executor for '{type_key}' must be callable")
        if type_key in self._legacy:
            logger.warning(f"Replacing legacy executor '{type_key}'")
        entry = LegacyEntry(
            type_key=type_key,
            impl=impl,
            category=category,
            version=version,
            display_name=display_name or type_key,
            description=description,
            config_schema=config_schema,
        )
        self._legacy[type_key] = entry
        return entry

    def register_declarative(self, executor: BaseExecutor) -> DeclarativeEntry:
        definition = executor.get_definition()
        if definition.type_key in self._declarative:
            logger.warning(f"Replacing declarative executor '{definition.type_key}'")
        entry = DeclarativeEntry(type_key=definition.type_key, impl=executor, definition=definition)
        self._declarative[definition.type_key] = entry
        return entry

    def register_alias(self, alias: str, type_key: str) -> None:
        if alias == type_key:
            raise ValueError(f"Alias '{alias}' cannot point at itself")
        self._aliases[alias] = type_key

    # ========== Lookup ==========

    def get(self, type_key: str) -> ExecutorEntry | None:
        key = self._aliases.get(type_key, type_key)
        return self._declarative.get(key) or self._legacy.get(key)

    def resolve(self, type_key: str) -> ExecutorEntry:
        entry = self.get(type_key)
        if entry is None:
            raise NodeTypeNotFound(
                f"Node type '{type_key}' not found in registry", candidates=[type_key]
            )
        return entry

    def resolve_node(self, node: NodeSpec) -> tuple[ExecutorEntry, str]:
        """Walk the candidate chain for a node.

        Returns the entry and the candidate key that matched.

        Raises:
            NodeTypeNotFound: No candidate matched; the message names all of them.
        """
        candidates = candidate_type_keys(node)
        for i, key in enumerate(candidates):
            entry = self.get(key)
            if entry is None:
                continue
            if i > 0:
                logger.info(
                    f"Node {node.id}: resolved type via fallback '{key}' "
                    f"(tried {', '.join(candidates[:i])})"
                )
            return entry, key
        raise NodeTypeNotFound(
            f"Node not found in registry. Tried: {', '.join(candidates)}",
            candidates=candidates,
        )

    def __contains__(self, type_key: str) -> bool:
        return self.get(type_key) is not None

    def list_all(self) -> list[ExecutorEntry]:
        """Every entry, declarative first; a legacy entry shadowed by a
        declarative one with the same key is omitted."""
        entries: list[ExecutorEntry] = list(self._declarative.values())
        entries.extend(e for k, e in self._legacy.items() if k not in self._declarative)
        return entries

    def group_by_category(self) -> dict[str, list[ExecutorEntry]]:
        groups: dict[str, list[ExecutorEntry]] = {}
        for entry in self.list_all():
            groups.setdefault(entry.category, []).append(entry)
        return groups

    def categories(self) -> list[str]:
        return sorted(self.group_by_category())

    def aliases(self) -> dict[str, str]:
        return dict(self._aliases)

    def describe(self, entry: ExecutorEntry) -> NodeInfo:
        return NodeInfo(
            type_key=entry.type_key,
            kind=entry.kind,
            display_name=entry.display_name,
            category=entry.category,
            version=entry.version,
            description=entry.description,
            config_schema=entry.config_schema,
        )

    # ========== Validation ==========

    def validate_config(self, type_key: str, config: dict[str, Any]) -> list[str]:
        """Validate a node config against the executor's JSON schema.

        Returns a list of error messages (empty when valid or when the entry
        has no schema).

        Raises:
            NodeTypeNotFound: Unknown type key.
        """
        entry = self.resolve(type_key)
        schema = entry.config_schema
        if not schema:
            return []
        try:
            validator_cls = jsonschema.validators.validator_for(schema)
            validator_cls.check_schema(schema)
        except jsonschema.SchemaError as e:
            return [f"Invalid config schema for '{entry.type_key}': {e.message}"]
        validator = validator_cls(schema)
        errors = []
        for error in sorted(validator.iter_errors(config), key=lambda e: list(e.path)):
            location = ".".join(str(p) for p in error.path)
            errors.append(f"{location}: {error.message}" if location else error.message)
        return errors

    def find_ambiguous_type_keys(self, definition: WorkflowDefinition) -> list[str]:
        """Nodes whose type only resolves through a fallback, or whose
        subtype and type resolve to two different executors."""
        problems = []
        for node in definition.nodes:
            candidates = candidate_type_keys(node)
            resolved = [k for k in candidates if self.get(k) is not None]
            if not resolved:
                continue
            first_key = resolved[0]
            if first_key != candidates[0]:
                problems.append(
                    f"Node '{node.id}': type '{candidates[0]}' only resolves via fallback "
                    f"'{first_key}'"
                )
                continue
            if node.subtype and node.subtype != node.type:
                sub_entry = self.get(node.subtype)
                type_entry = self.get(node.type)
                if sub_entry is not None and type_entry is not None and sub_entry is not type_entry:
                    problems.append(
                        f"Node '{node.id}': subtype '{node.subtype}' and type '{node.type}' "
                        "resolve to different executors"
                    )
        return problems
