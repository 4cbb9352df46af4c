"""
CRM Store for Rapport.

SQLite-backed storage for the records health scoring and smart groups read:
entities, relationships, tags, groups, interactions and reminders.

Every mutation that can change smart group membership evicts the owner's
cached smart groups before returning (see cache_invalidation.py).
"""
import json
import logging
import sqlite3
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field, asdict
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Callable, Iterator, Optional, TYPE_CHECKING

from api.services.errors import DataAccessError, NotFoundError
from config.health_weights import MAX_GROUPS_PER_USER, MAX_THRESHOLD_DAYS, MIN_THRESHOLD_DAYS
from config.settings import settings

if TYPE_CHECKING:
    from api.services.cache_invalidation import CacheInvalidator

logger = logging.getLogger(__name__)

ENTITY_TYPES = ("person", "organization", "service", "thing", "animal", "abstract")
RELATIONSHIP_TYPES = (
    "friend", "family", "colleague", "client", "vendor",
    "acquaintance", "service_provider", "other",
)
RELATIONSHIP_STRENGTHS = ("close", "regular", "acquaintance")
RELATIONSHIP_STATUSES = ("active", "inactive", "archived")

DEFAULT_THRESHOLD_DAYS = 30


def _make_aware(dt: Optional[datetime]) -> Optional[datetime]:
    """Ensure datetime is timezone-aware (UTC if naive)."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def _to_db(dt: Optional[datetime]) -> Optional[str]:
    """Serialize a datetime as fixed-width UTC ISO text so string order matches time order."""
    if dt is None:
        return None
    return _make_aware(dt).astimezone(timezone.utc).isoformat(timespec="microseconds")


def _from_db(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return _make_aware(datetime.fromisoformat(value))


def _new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class Entity:
    """A tracked person, organization or thing owned by a user."""

    owner_id: str
    name: str
    type: str = "person"
    id: str = field(default_factory=_new_id)
    last_interaction_at: Optional[datetime] = None
    archived_at: Optional[datetime] = None
    metadata: dict = field(default_factory=dict)
    inserted_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    # Tag names, populated on read
    tags: list[str] = field(default_factory=list)

    @property
    def is_archived(self) -> bool:
        return self.archived_at is not None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["last_interaction_at"] = _iso(self.last_interaction_at)
        data["archived_at"] = _iso(self.archived_at)
        data["inserted_at"] = _iso(self.inserted_at)
        return data

    @classmethod
    def from_row(cls, row: sqlite3.Row, tags: Optional[list[str]] = None) -> "Entity":
        return cls(
            id=row["id"],
            owner_id=row["owner_id"],
            name=row["name"],
            type=row["type"],
            last_interaction_at=_from_db(row["last_interaction_at"]),
            archived_at=_from_db(row["archived_at"]),
            metadata=json.loads(row["metadata"]) if row["metadata"] else {},
            inserted_at=_from_db(row["inserted_at"]) or datetime.now(timezone.utc),
            tags=tags or [],
        )


@dataclass
class Relationship:
    """A user's connection to one entity, carrying health tracking config."""

    user_id: str
    entity_id: str
    type: Optional[str] = None
    strength: str = "regular"
    status: str = "active"
    started_at: Optional[date] = None
    health_threshold_days: int = DEFAULT_THRESHOLD_DAYS
    notes: Optional[str] = None
    id: str = field(default_factory=_new_id)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["started_at"] = self.started_at.isoformat() if self.started_at else None
        return data

    @classmethod
    def from_row(cls, row: sqlite3.Row, prefix: str = "") -> "Relationship":
        started_at = row[f"{prefix}started_at"]
        return cls(
            id=row[f"{prefix}id"],
            user_id=row[f"{prefix}user_id"],
            entity_id=row[f"{prefix}entity_id"],
            type=row[f"{prefix}type"],
            strength=row[f"{prefix}strength"],
            status=row[f"{prefix}status"],
            started_at=date.fromisoformat(started_at) if started_at else None,
            health_threshold_days=row[f"{prefix}health_threshold_days"],
            notes=row[f"{prefix}notes"],
        )


@dataclass
class Group:
    """A manual or smart (rule-based) group of entities."""

    user_id: str
    name: str
    description: Optional[str] = None
    is_smart: bool = False
    rules: dict = field(default_factory=dict)
    id: str = field(default_factory=_new_id)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Group":
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            name=row["name"],
            description=row["description"],
            is_smart=bool(row["is_smart"]),
            rules=json.loads(row["rules"]) if row["rules"] else {},
        )


@dataclass
class Interaction:
    """A single logged touchpoint with an entity."""

    entity_id: str
    occurred_at: datetime
    title: str = ""
    type: str = "other"
    id: str = field(default_factory=_new_id)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["occurred_at"] = _iso(self.occurred_at)
        return data


@dataclass
class Reminder:
    """A follow-up reminder, e.g. a health alert."""

    user_id: str
    title: str
    type: str = "follow_up"
    entity_id: Optional[str] = None
    description: Optional[str] = None
    due_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    notification_channels: list[str] = field(default_factory=list)
    id: str = field(default_factory=_new_id)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["due_at"] = _iso(self.due_at)
        data["completed_at"] = _iso(self.completed_at)
        return data

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Reminder":
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            entity_id=row["entity_id"],
            type=row["type"],
            title=row["title"],
            description=row["description"],
            due_at=_from_db(row["due_at"]),
            completed_at=_from_db(row["completed_at"]),
            notification_channels=json.loads(row["notification_channels"] or "[]"),
        )


@dataclass
class EntitySnapshot:
    """An entity joined with the owner's relationship to it (if any)."""

    entity: Entity
    relationship: Optional[Relationship] = None


def _iso(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt else None


def get_crm_db_path() -> str:
    """Get the path to the CRM database."""
    db_path = Path(settings.db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    return str(db_path)


_SCHEMA = """
CREATE TABLE IF NOT EXISTS entities (
    id TEXT PRIMARY KEY,
    owner_id TEXT NOT NULL,
    name TEXT NOT NULL,
    type TEXT NOT NULL,
    last_interaction_at TIMESTAMP,
    archived_at TIMESTAMP,
    metadata TEXT,
    inserted_at TIMESTAMP NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_entities_owner ON entities(owner_id);

CREATE TABLE IF NOT EXISTS relationships (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    entity_id TEXT NOT NULL REFERENCES entities(id) ON DELETE CASCADE,
    type TEXT,
    strength TEXT NOT NULL DEFAULT 'regular',
    status TEXT NOT NULL DEFAULT 'active',
    started_at DATE,
    health_threshold_days INTEGER NOT NULL DEFAULT 30,
    notes TEXT,
    UNIQUE (user_id, entity_id)
);

CREATE TABLE IF NOT EXISTS tags (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    name TEXT NOT NULL,
    UNIQUE (user_id, name)
);

CREATE TABLE IF NOT EXISTS entity_tags (
    entity_id TEXT NOT NULL REFERENCES entities(id) ON DELETE CASCADE,
    tag_id TEXT NOT NULL REFERENCES tags(id) ON DELETE CASCADE,
    PRIMARY KEY (entity_id, tag_id)
);

CREATE TABLE IF NOT EXISTS contact_groups (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    name TEXT NOT NULL,
    description TEXT,
    is_smart INTEGER NOT NULL DEFAULT 0,
    rules TEXT,
    UNIQUE (user_id, name)
);

CREATE TABLE IF NOT EXISTS entity_groups (
    group_id TEXT NOT NULL REFERENCES contact_groups(id) ON DELETE CASCADE,
    entity_id TEXT NOT NULL REFERENCES entities(id) ON DELETE CASCADE,
    added_at TIMESTAMP NOT NULL,
    PRIMARY KEY (group_id, entity_id)
);

CREATE TABLE IF NOT EXISTS interactions (
    id TEXT PRIMARY KEY,
    entity_id TEXT NOT NULL REFERENCES entities(id) ON DELETE CASCADE,
    type TEXT NOT NULL,
    title TEXT NOT NULL,
    occurred_at TIMESTAMP NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_interactions_entity_occurred
    ON interactions(entity_id, occurred_at DESC);

CREATE TABLE IF NOT EXISTS reminders (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    entity_id TEXT REFERENCES entities(id) ON DELETE CASCADE,
    type TEXT NOT NULL,
    title TEXT NOT NULL,
    description TEXT,
    due_at TIMESTAMP,
    completed_at TIMESTAMP,
    notification_channels TEXT
);
"""

_RELATIONSHIP_COLUMNS = """
    r.id AS r_id, r.user_id AS r_user_id, r.entity_id AS r_entity_id,
    r.type AS r_type, r.strength AS r_strength, r.status AS r_status,
    r.started_at AS r_started_at,
    r.health_threshold_days AS r_health_threshold_days, r.notes AS r_notes
"""


class CrmStore:
    """
    SQLite-backed CRM storage.

    Read methods back health scoring, digests and smart group evaluation.
    Write methods trigger smart group cache invalidation for the owner.
    """

    def __init__(self, db_path: Optional[str] = None, invalidator: Optional["CacheInvalidator"] = None):
        """
        Initialize CRM store.

        Args:
            db_path: Path to SQLite database (default from settings)
            invalidator: Smart group cache invalidator called before each mutation commits
        """
        self.db_path = db_path or get_crm_db_path()
        self.invalidator = invalidator
        self._init_db()

    def _init_db(self):
        """Create database tables if they don't exist."""
        with self._connection() as conn:
            conn.executescript(_SCHEMA)
        logger.info(f"Initialized CRM database at {self.db_path}")

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        """
        Open a connection, commit on success, and surface sqlite errors as DataAccessError.

        Any exception raised inside the block rolls the transaction back.
        """
        try:
            conn = sqlite3.connect(self.db_path)
        except sqlite3.Error as e:
            raise DataAccessError(f"Could not open CRM database {self.db_path}: {e}") from e
        conn.row_factory = sqlite3.Row
        try:
            conn.execute("PRAGMA foreign_keys = ON")
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise DataAccessError(f"CRM database error: {e}") from e
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _invalidate(self, user_id: str) -> None:
        """
        Evict the user's cached smart groups.

        Called inside the mutating transaction, before commit, so a failed
        eviction (CacheUnavailableError) rolls the write back and the
        caller's retry is safe.
        """
        if self.invalidator is not None:
            self.invalidator.invalidate_smart_groups_for_user(user_id)

    def _load_tags(self, conn: sqlite3.Connection, entity_ids: list[str]) -> dict[str, list[str]]:
        """Map entity ID -> sorted tag names."""
        if not entity_ids:
            return {}
        placeholders = ",".join("?" for _ in entity_ids)
        cursor = conn.execute(
            f"""
            SELECT et.entity_id, t.name FROM entity_tags et
            JOIN tags t ON t.id = et.tag_id
            WHERE et.entity_id IN ({placeholders})
            ORDER BY t.name
            """,
            entity_ids,
        )
        tags: dict[str, list[str]] = {}
        for row in cursor.fetchall():
            tags.setdefault(row["entity_id"], []).append(row["name"])
        return tags

    # ------------------------------------------------------------------
    # Entities
    # ------------------------------------------------------------------

    def add_entity(self, entity: Entity) -> Entity:
        """Add an entity and evict its owner's cached smart groups."""
        if entity.type not in ENTITY_TYPES:
            raise ValueError(f"Invalid entity type: {entity.type}")
        with self._connection() as conn:
            conn.execute(
                """
                INSERT INTO entities
                (id, owner_id, name, type, last_interaction_at, archived_at, metadata, inserted_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entity.id,
                    entity.owner_id,
                    entity.name,
                    entity.type,
                    _to_db(entity.last_interaction_at),
                    _to_db(entity.archived_at),
                    json.dumps(entity.metadata),
                    _to_db(entity.inserted_at),
                ),
            )
            self._invalidate(entity.owner_id)
        return entity

    def update_entity(self, entity: Entity) -> Entity:
        """Persist changed entity fields (not tags) and evict cached smart groups."""
        if entity.type not in ENTITY_TYPES:
            raise ValueError(f"Invalid entity type: {entity.type}")
        with self._connection() as conn:
            cursor = conn.execute(
                """
                UPDATE entities
                SET name = ?, type = ?, last_interaction_at = ?, archived_at = ?, metadata = ?
                WHERE id = ?
                """,
                (
                    entity.name,
                    entity.type,
                    _to_db(entity.last_interaction_at),
                    _to_db(entity.archived_at),
                    json.dumps(entity.metadata),
                    entity.id,
                ),
            )
            if cursor.rowcount == 0:
                raise NotFoundError("entity", entity.id)
            self._invalidate(entity.owner_id)
        return entity

    def archive_entity(self, entity_id: str, archived_at: Optional[datetime] = None) -> Entity:
        """Mark an entity archived. Archived entities drop out of health and smart groups."""
        entity = self.get_entity(entity_id)
        entity.archived_at = archived_at or datetime.now(timezone.utc)
        return self.update_entity(entity)

    def delete_entity(self, entity_id: str) -> bool:
        """
        Delete an entity and everything hanging off it.

        Returns:
            True if deleted, False if not found
        """
        with self._connection() as conn:
            row = conn.execute("SELECT owner_id FROM entities WHERE id = ?", (entity_id,)).fetchone()
            if row is None:
                return False
            conn.execute("DELETE FROM entities WHERE id = ?", (entity_id,))
            self._invalidate(row["owner_id"])
        return True

    def get_entity(self, entity_id: str) -> Entity:
        """Get entity by ID, with tags. Raises NotFoundError if missing."""
        with self._connection() as conn:
            row = conn.execute("SELECT * FROM entities WHERE id = ?", (entity_id,)).fetchone()
            if row is None:
                raise NotFoundError("entity", entity_id)
            tags = self._load_tags(conn, [entity_id])
        return Entity.from_row(row, tags.get(entity_id))

    def list_entities(self, user_id: str, include_archived: bool = False) -> list[Entity]:
        """List a user's entities ordered by name."""
        query = "SELECT * FROM entities WHERE owner_id = ?"
        if not include_archived:
            query += " AND archived_at IS NULL"
        query += " ORDER BY name COLLATE NOCASE, id"
        with self._connection() as conn:
            rows = conn.execute(query, (user_id,)).fetchall()
            tags = self._load_tags(conn, [row["id"] for row in rows])
        return [Entity.from_row(row, tags.get(row["id"])) for row in rows]

    def count_entities(
        self,
        user_id: str,
        include_archived: bool = False,
        created_since: Optional[datetime] = None,
        created_before: Optional[datetime] = None,
    ) -> int:
        """Count a user's entities, optionally restricted to an insertion window."""
        query = "SELECT COUNT(*) FROM entities WHERE owner_id = ?"
        params: list = [user_id]
        if not include_archived:
            query += " AND archived_at IS NULL"
        if created_since is not None:
            query += " AND inserted_at >= ?"
            params.append(_to_db(created_since))
        if created_before is not None:
            query += " AND inserted_at < ?"
            params.append(_to_db(created_before))
        with self._connection() as conn:
            return conn.execute(query, params).fetchone()[0]

    def query_entities_by_predicate(
        self,
        user_id: str,
        predicate: Callable[[EntitySnapshot], bool],
    ) -> list[EntitySnapshot]:
        """
        Return the user's non-archived entities that satisfy a predicate.

        Entities are loaded with their tags and the user's relationship, then
        filtered in process. Results are ordered by entity name.
        """
        with self._connection() as conn:
            rows = conn.execute(
                f"""
                SELECT e.*, {_RELATIONSHIP_COLUMNS}
                FROM entities e
                LEFT JOIN relationships r ON r.entity_id = e.id AND r.user_id = ?
                WHERE e.owner_id = ? AND e.archived_at IS NULL
                ORDER BY e.name COLLATE NOCASE, e.id
                """,
                (user_id, user_id),
            ).fetchall()
            tags = self._load_tags(conn, [row["id"] for row in rows])

        snapshots = []
        for row in rows:
            relationship = Relationship.from_row(row, prefix="r_") if row["r_id"] else None
            snapshot = EntitySnapshot(Entity.from_row(row, tags.get(row["id"])), relationship)
            if predicate(snapshot):
                snapshots.append(snapshot)
        return snapshots

    # ------------------------------------------------------------------
    # Tags
    # ------------------------------------------------------------------

    def add_tag_to_entity(self, entity_id: str, tag_name: str) -> bool:
        """
        Tag an entity, creating the tag for the owner if needed.

        Returns:
            True if the tag was newly attached
        """
        tag_name = tag_name.strip().lower()
        if not tag_name:
            raise ValueError("Tag name cannot be empty")
        entity = self.get_entity(entity_id)
        with self._connection() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO tags (id, user_id, name) VALUES (?, ?, ?)",
                (_new_id(), entity.owner_id, tag_name),
            )
            tag_id = conn.execute(
                "SELECT id FROM tags WHERE user_id = ? AND name = ?",
                (entity.owner_id, tag_name),
            ).fetchone()["id"]
            cursor = conn.execute(
                "INSERT OR IGNORE INTO entity_tags (entity_id, tag_id) VALUES (?, ?)",
                (entity_id, tag_id),
            )
            added = cursor.rowcount > 0
            self._invalidate(entity.owner_id)
        return added

    def remove_tag_from_entity(self, entity_id: str, tag_name: str) -> bool:
        """
        Detach a tag from an entity.

        Returns:
            True if the tag was attached and has been removed
        """
        tag_name = tag_name.strip().lower()
        entity = self.get_entity(entity_id)
        with self._connection() as conn:
            cursor = conn.execute(
                """
                DELETE FROM entity_tags
                WHERE entity_id = ? AND tag_id IN (
                    SELECT id FROM tags WHERE user_id = ? AND name = ?
                )
                """,
                (entity_id, entity.owner_id, tag_name),
            )
            removed = cursor.rowcount > 0
            self._invalidate(entity.owner_id)
        return removed

    def list_tag_names(self, user_id: str) -> list[str]:
        with self._connection() as conn:
            rows = conn.execute(
                "SELECT name FROM tags WHERE user_id = ? ORDER BY name", (user_id,)
            ).fetchall()
        return [row["name"] for row in rows]

    # ------------------------------------------------------------------
    # Relationships
    # ------------------------------------------------------------------

    def upsert_relationship(self, relationship: Relationship) -> Relationship:
        """Create or replace the user's relationship to an entity."""
        _validate_relationship(relationship)
        with self._connection() as conn:
            conn.execute(
                """
                INSERT INTO relationships
                (id, user_id, entity_id, type, strength, status, started_at, health_threshold_days, notes)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (user_id, entity_id) DO UPDATE SET
                    type = excluded.type,
                    strength = excluded.strength,
                    status = excluded.status,
                    started_at = excluded.started_at,
                    health_threshold_days = excluded.health_threshold_days,
                    notes = excluded.notes
                """,
                (
                    relationship.id,
                    relationship.user_id,
                    relationship.entity_id,
                    relationship.type,
                    relationship.strength,
                    relationship.status,
                    relationship.started_at.isoformat() if relationship.started_at else None,
                    relationship.health_threshold_days,
                    relationship.notes,
                ),
            )
            row = conn.execute(
                "SELECT id FROM relationships WHERE user_id = ? AND entity_id = ?",
                (relationship.user_id, relationship.entity_id),
            ).fetchone()
            relationship.id = row["id"]
            self._invalidate(relationship.user_id)
        return relationship

    def get_relationship(self, user_id: str, entity_id: str) -> Optional[Relationship]:
        """Get the user's relationship to an entity, or None."""
        with self._connection() as conn:
            row = conn.execute(
                "SELECT * FROM relationships WHERE user_id = ? AND entity_id = ?",
                (user_id, entity_id),
            ).fetchone()
        return Relationship.from_row(row) if row else None

    def update_relationship_status(self, user_id: str, entity_id: str, status: str) -> Relationship:
        """Change a relationship's status and evict cached smart groups."""
        if status not in RELATIONSHIP_STATUSES:
            raise ValueError(f"Invalid relationship status: {status}")
        with self._connection() as conn:
            cursor = conn.execute(
                "UPDATE relationships SET status = ? WHERE user_id = ? AND entity_id = ?",
                (status, user_id, entity_id),
            )
            if cursor.rowcount == 0:
                raise NotFoundError("relationship", entity_id)
            self._invalidate(user_id)
        return self.get_relationship(user_id, entity_id)

    def update_health_threshold(self, user_id: str, entity_id: str, threshold_days: int) -> Relationship:
        """
        Set a relationship's health threshold.

        Creates an active relationship if the user has none with this entity yet.

        Raises:
            ValueError: threshold outside 1-365 days
            NotFoundError: entity does not exist or belongs to another user
        """
        if not isinstance(threshold_days, int) or not MIN_THRESHOLD_DAYS <= threshold_days <= MAX_THRESHOLD_DAYS:
            raise ValueError(
                f"health_threshold_days must be between {MIN_THRESHOLD_DAYS} and {MAX_THRESHOLD_DAYS}"
            )
        entity = self.get_entity(entity_id)
        if entity.owner_id != user_id:
            raise NotFoundError("entity", entity_id)

        relationship = self.get_relationship(user_id, entity_id)
        if relationship is None:
            relationship = Relationship(user_id=user_id, entity_id=entity_id)
        relationship.health_threshold_days = threshold_days
        return self.upsert_relationship(relationship)

    def list_active_relationships(self, user_id: str) -> list[tuple[Relationship, Entity]]:
        """
        List the user's active relationships joined with their (non-archived) entities.

        Returns:
            (Relationship, Entity) pairs ordered by entity name
        """
        with self._connection() as conn:
            rows = conn.execute(
                f"""
                SELECT e.*, {_RELATIONSHIP_COLUMNS}
                FROM relationships r
                JOIN entities e ON e.id = r.entity_id
                WHERE r.user_id = ? AND r.status = 'active'
                  AND e.owner_id = ? AND e.archived_at IS NULL
                ORDER BY e.name COLLATE NOCASE, e.id
                """,
                (user_id, user_id),
            ).fetchall()
            tags = self._load_tags(conn, [row["id"] for row in rows])
        return [
            (Relationship.from_row(row, prefix="r_"), Entity.from_row(row, tags.get(row["id"])))
            for row in rows
        ]

    def list_user_ids(self) -> list[str]:
        """Every user with at least one relationship."""
        with self._connection() as conn:
            rows = conn.execute("SELECT DISTINCT user_id FROM relationships ORDER BY user_id").fetchall()
        return [row["user_id"] for row in rows]

    def list_relationships(self, user_id: str) -> list[tuple[Relationship, Entity]]:
        """List every relationship (any status) with a non-archived entity."""
        with self._connection() as conn:
            rows = conn.execute(
                f"""
                SELECT e.*, {_RELATIONSHIP_COLUMNS}
                FROM relationships r
                JOIN entities e ON e.id = r.entity_id
                WHERE r.user_id = ? AND e.archived_at IS NULL
                ORDER BY e.name COLLATE NOCASE, e.id
                """,
                (user_id,),
            ).fetchall()
        return [(Relationship.from_row(row, prefix="r_"), Entity.from_row(row)) for row in rows]

    # ------------------------------------------------------------------
    # Groups
    # ------------------------------------------------------------------

    def add_group(self, group: Group) -> Group:
        """
        Add a group.

        Smart groups must carry structurally valid rules; manual groups must
        carry none.

        Raises:
            ConfigurationError: invalid smart group rules
            ValueError: rules given for a manual group, or the user already
                has MAX_GROUPS_PER_USER groups
        """
        from api.services.smart_groups import parse_rules

        if group.is_smart:
            parse_rules(group, strict=True)
        elif group.rules:
            raise ValueError("rules should not be provided for non-smart groups")

        with self._connection() as conn:
            existing = conn.execute(
                "SELECT COUNT(*) FROM contact_groups WHERE user_id = ?", (group.user_id,)
            ).fetchone()[0]
            if existing >= MAX_GROUPS_PER_USER:
                raise ValueError(f"Maximum number of groups ({MAX_GROUPS_PER_USER}) reached")
            conn.execute(
                """
                INSERT INTO contact_groups (id, user_id, name, description, is_smart, rules)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    group.id,
                    group.user_id,
                    group.name,
                    group.description,
                    int(group.is_smart),
                    json.dumps(group.rules) if group.rules else None,
                ),
            )
        return group

    def get_group(self, group_id: str) -> Group:
        """Get group by ID. Raises NotFoundError if missing."""
        with self._connection() as conn:
            row = conn.execute("SELECT * FROM contact_groups WHERE id = ?", (group_id,)).fetchone()
        if row is None:
            raise NotFoundError("group", group_id)
        return Group.from_row(row)

    def add_entities_to_group(self, group: Group, entity_ids: list[str]) -> int:
        """Add entities to a manual group. Smart group membership cannot be edited."""
        if group.is_smart:
            raise ValueError("Cannot manually add entities to a smart group")
        now = _to_db(datetime.now(timezone.utc))
        with self._connection() as conn:
            cursor = conn.executemany(
                "INSERT OR IGNORE INTO entity_groups (group_id, entity_id, added_at) VALUES (?, ?, ?)",
                [(group.id, entity_id, now) for entity_id in entity_ids],
            )
            return cursor.rowcount

    def remove_entity_from_group(self, group: Group, entity_id: str) -> bool:
        if group.is_smart:
            raise ValueError("Cannot manually remove entities from a smart group")
        with self._connection() as conn:
            cursor = conn.execute(
                "DELETE FROM entity_groups WHERE group_id = ? AND entity_id = ?",
                (group.id, entity_id),
            )
            return cursor.rowcount > 0

    def list_group_members(self, group: Group) -> list[Entity]:
        """List a manual group's non-archived members ordered by name."""
        with self._connection() as conn:
            rows = conn.execute(
                """
                SELECT e.* FROM entities e
                JOIN entity_groups eg ON eg.entity_id = e.id
                WHERE eg.group_id = ? AND e.archived_at IS NULL
                ORDER BY e.name COLLATE NOCASE, e.id
                """,
                (group.id,),
            ).fetchall()
            tags = self._load_tags(conn, [row["id"] for row in rows])
        return [Entity.from_row(row, tags.get(row["id"])) for row in rows]

    # ------------------------------------------------------------------
    # Interactions
    # ------------------------------------------------------------------

    def record_interaction(self, interaction: Interaction) -> Interaction:
        """
        Record an interaction.

        Moves the entity's last_interaction_at forward when this interaction
        is newer, then evicts the owner's cached smart groups.
        """
        entity = self.get_entity(interaction.entity_id)
        occurred_at = _make_aware(interaction.occurred_at)
        interaction.occurred_at = occurred_at
        with self._connection() as conn:
            conn.execute(
                "INSERT INTO interactions (id, entity_id, type, title, occurred_at) VALUES (?, ?, ?, ?, ?)",
                (interaction.id, interaction.entity_id, interaction.type, interaction.title, _to_db(occurred_at)),
            )
            # Compare in SQL so concurrent writers can only move it forward
            conn.execute(
                """
                UPDATE entities SET last_interaction_at = ?
                WHERE id = ? AND (last_interaction_at IS NULL OR last_interaction_at < ?)
                """,
                (_to_db(occurred_at), entity.id, _to_db(occurred_at)),
            )
            self._invalidate(entity.owner_id)
        return interaction

    def count_interactions(self, user_id: str, start: datetime, end: datetime) -> int:
        """Count interactions with the user's entities where start <= occurred_at < end."""
        with self._connection() as conn:
            return conn.execute(
                """
                SELECT COUNT(*) FROM interactions i
                JOIN entities e ON e.id = i.entity_id
                WHERE e.owner_id = ? AND i.occurred_at >= ? AND i.occurred_at < ?
                """,
                (user_id, _to_db(start), _to_db(end)),
            ).fetchone()[0]

    def top_interacted_entities(self, user_id: str, start: datetime, end: datetime, limit: int = 5) -> list[dict]:
        """Entities with the most interactions in [start, end), busiest first."""
        with self._connection() as conn:
            rows = conn.execute(
                """
                SELECT e.id AS entity_id, e.name AS entity_name, COUNT(i.id) AS count
                FROM interactions i
                JOIN entities e ON e.id = i.entity_id
                WHERE e.owner_id = ? AND i.occurred_at >= ? AND i.occurred_at < ?
                GROUP BY e.id, e.name
                ORDER BY count DESC, e.name COLLATE NOCASE
                LIMIT ?
                """,
                (user_id, _to_db(start), _to_db(end), limit),
            ).fetchall()
        return [dict(row) for row in rows]

    # ------------------------------------------------------------------
    # Reminders
    # ------------------------------------------------------------------

    def add_reminder(self, reminder: Reminder) -> Reminder:
        with self._connection() as conn:
            conn.execute(
                """
                INSERT INTO reminders
                (id, user_id, entity_id, type, title, description, due_at, completed_at, notification_channels)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    reminder.id,
                    reminder.user_id,
                    reminder.entity_id,
                    reminder.type,
                    reminder.title,
                    reminder.description,
                    _to_db(reminder.due_at),
                    _to_db(reminder.completed_at),
                    json.dumps(reminder.notification_channels),
                ),
            )
        return reminder

    def complete_reminder(self, reminder_id: str, completed_at: Optional[datetime] = None) -> bool:
        with self._connection() as conn:
            cursor = conn.execute(
                "UPDATE reminders SET completed_at = ? WHERE id = ?",
                (_to_db(completed_at or datetime.now(timezone.utc)), reminder_id),
            )
            return cursor.rowcount > 0

    def list_reminders(self, user_id: str, entity_id: Optional[str] = None) -> list[Reminder]:
        query = "SELECT * FROM reminders WHERE user_id = ?"
        params: list = [user_id]
        if entity_id:
            query += " AND entity_id = ?"
            params.append(entity_id)
        with self._connection() as conn:
            rows = conn.execute(query + " ORDER BY due_at", params).fetchall()
        return [Reminder.from_row(row) for row in rows]

    def has_pending_reminder(self, user_id: str, entity_id: str, reminder_type: str) -> bool:
        """Check for an uncompleted reminder of a type for an entity."""
        with self._connection() as conn:
            row = conn.execute(
                """
                SELECT 1 FROM reminders
                WHERE user_id = ? AND entity_id = ? AND type = ? AND completed_at IS NULL
                LIMIT 1
                """,
                (user_id, entity_id, reminder_type),
            ).fetchone()
        return row is not None

    def count_completed_reminders(self, user_id: str, start: datetime, end: datetime) -> int:
        with self._connection() as conn:
            return conn.execute(
                """
                SELECT COUNT(*) FROM reminders
                WHERE user_id = ? AND completed_at IS NOT NULL
                  AND completed_at >= ? AND completed_at < ?
                """,
                (user_id, _to_db(start), _to_db(end)),
            ).fetchone()[0]


def _validate_relationship(relationship: Relationship) -> None:
    if relationship.type is not None and relationship.type not in RELATIONSHIP_TYPES:
        raise ValueError(f"Invalid relationship type: {relationship.type}")
    if relationship.strength not in RELATIONSHIP_STRENGTHS:
        raise ValueError(f"Invalid relationship strength: {relationship.strength}")
    if relationship.status not in RELATIONSHIP_STATUSES:
        raise ValueError(f"Invalid relationship status: {relationship.status}")
    threshold = relationship.health_threshold_days
    if not isinstance(threshold, int) or not MIN_THRESHOLD_DAYS <= threshold <= MAX_THRESHOLD_DAYS:
        raise ValueError(
            f"health_threshold_days must be between {MIN_THRESHOLD_DAYS} and {MAX_THRESHOLD_DAYS}"
        )


# Singleton instance
_crm_store: Optional[CrmStore] = None


def get_crm_store(db_path: Optional[str] = None) -> CrmStore:
    """
    Get or create the singleton CrmStore.

    The store is wired to the process-wide cache invalidator so every
    mutation evicts stale smart group memberships.
    """
    global _crm_store
    if _crm_store is None:
        from api.services.cache_invalidation import get_cache_invalidator
        _crm_store = CrmStore(db_path, invalidator=get_cache_invalidator())
    return _crm_store
