"""Versioned configuration migration for node types.

Each node type may register a chain of single-step migrations
(``from_version`` -> ``to_version``). ``migrate`` walks that chain from the
stored version toward the executor's target version, always on a copy of the
configuration, so a stored workflow is never mutated by running it.
"""

from __future__ import annotations

import copy
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from nodeflow.core.errors import MigrationError

logger = logging.getLogger(__name__)

Config = dict[str, Any]


@dataclass(frozen=True)
class VersionMigration:
    """One upgrade step for a node type's configuration."""

    from_version: int
    to_version: int
    upgrade: Callable[[Config], Config]
    description: str = ""


class MigrationRegistry:
    """Per-type migration chains."""

    def __init__(self):
        self._migrations: dict[str, list[VersionMigration]] = {}

    def register(self, type_key: str, migration: VersionMigration) -> None:
        if migration.to_version <= migration.from_version:
            raise ValueError(
                f"Migration for '{type_key}' must move forward "
                f"(got v{migration.from_version} -> v{migration.to_version})"
            )
        chain = self._migrations.setdefault(type_key, [])
        chain.append(migration)
        chain.sort(key=lambda m: m.from_version)
        logger.debug(
            f"Registered migration {type_key} v{migration.from_version} -> v{migration.to_version}"
        )

    def has_migrations(self, type_key: str) -> bool:
        return bool(self._migrations.get(type_key))

    def migrations_for(self, type_key: str) -> list[VersionMigration]:
        return list(self._migrations.get(type_key, []))

    def migrate(
        self, type_key: str, current: int, target: int, config: Config
    ) -> tuple[Config, int]:
        """Upgrade ``config`` from version ``current`` to ``target``.

        Returns the upgraded copy and the version it now conforms to.
        Downgrades and already-current configs come back unchanged (as a
        copy, at ``current``). If the chain stops short of ``target`` the
        config at the last reachable version is returned with that version
        and a warning is logged.

        Raises:
            MigrationError: If an upgrade step raises.
        """
        migrated = copy.deepcopy(config)
        if current == target:
            return migrated, current
        if current > target:
            logger.warning(
                f"Downgrade not supported for '{type_key}' (v{current} -> v{target}); "
                "using config as-is"
            )
            return migrated, current

        version = current
        for step in self._migrations.get(type_key, []):
            if step.from_version != version or step.to_version > target:
                continue
            try:
                migrated = step.upgrade(migrated)
            except Exception as e:
                raise MigrationError(
                    f"Migration {type_key} v{step.from_version} -> v{step.to_version} failed: {e}"
                ) from e
            logger.info(
                f"Migrated {type_key} config v{step.from_version} -> v{step.to_version}"
                + (f" ({step.description})" if step.description else "")
            )
            version = step.to_version

        if version != target:
            logger.warning(
                f"Incomplete migration chain for '{type_key}': reached v{version}, target v{target}"
            )
        return migrated, version


def _http_request_v1_to_v2(config: Config) -> Config:
    url = config.get("url")
    if isinstance(url, str) and url and "://" not in url:
        config["url"] = f"https://{url}"
    return config


def _code_v1_to_v2(config: Config) -> Config:
    config.setdefault("mode", "runOnceForAllItems")
    return config


def register_default_migrations(registry: MigrationRegistry) -> MigrationRegistry:
    """Install the migrations shipped with the built-in node families."""
    registry.register(
        "http-request",
        VersionMigration(1, 2, _http_request_v1_to_v2, "add https:// to scheme-less URLs"),
    )
    registry.register(
        "code",
        VersionMigration(1, 2, _code_v1_to_v2, "default execution mode"),
    )
    return registry
