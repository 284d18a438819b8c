"""Versioned, indexed in-memory artifact store.

Artifacts are indexed by session, type and tag. Reads hand out deep copies so
callers never hold a reference into the store. Expiry is enforced lazily on
every read and by a periodic ``sweep_expired``.
"""

import copy
import json
import logging
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from pydantic import ValidationError as PydanticValidationError

from dcaflow.domain.errors import ArtifactError
from dcaflow.domain.events.bus import EventBus
from dcaflow.domain.events.event import Event
from dcaflow.domain.events.event_types import EventType
from dcaflow.domain.models.artifact import (
    Artifact,
    ArtifactMetadata,
    ArtifactQuery,
    ArtifactType,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_ARTIFACTS = 10_000

# Metadata keys a partial update may change. Tree links are managed by the store.
_UPDATABLE_METADATA = frozenset({"source", "agent_id", "tags"})


@dataclass
class ArtifactStats:
    total_artifacts: int = 0
    artifacts_by_type: dict[str, int] = field(default_factory=dict)
    artifacts_by_session: dict[str, int] = field(default_factory=dict)
    expired_artifacts: int = 0
    oldest: datetime | None = None
    newest: datetime | None = None


class ArtifactStore:
    def __init__(
        self,
        *,
        max_artifacts: int = DEFAULT_MAX_ARTIFACTS,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        if max_artifacts < 1:
            raise ValueError("max_artifacts must be positive")
        self.max_artifacts = max_artifacts
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        # Insertion ordered: oldest first.
        self._artifacts: dict[str, Artifact] = {}
        self._by_session: dict[str, set[str]] = defaultdict(set)
        self._by_type: dict[ArtifactType, set[str]] = defaultdict(set)
        self._by_tag: dict[str, set[str]] = defaultdict(set)

    def __len__(self) -> int:
        return len(self._artifacts)

    # ========================================================================
    # CRUD
    # ========================================================================

    def create(
        self,
        artifact_type: ArtifactType,
        session_id: str,
        data: dict[str, Any],
        metadata: ArtifactMetadata | dict[str, Any],
        *,
        ttl_seconds: float | None = None,
    ) -> str:
        """Store a new artifact and return its id.

        Raises:
            ArtifactError: If ``metadata.parent_id`` names an unknown artifact
                or one in another session
        """
        if isinstance(metadata, dict):
            metadata = ArtifactMetadata(**metadata)
        parent = None
        if metadata.parent_id is not None:
            parent = self._live(metadata.parent_id)
            if parent is None:
                raise ArtifactError(f"Parent artifact not found: {metadata.parent_id}")
            if parent.session_id != session_id:
                raise ArtifactError(
                    f"Parent artifact {metadata.parent_id} belongs to another session"
                )

        now = self._clock()
        artifact = Artifact(
            id=f"artifact_{uuid.uuid4().hex}",
            type=ArtifactType(artifact_type),
            session_id=session_id,
            created_at=now,
            updated_at=now,
            data=copy.deepcopy(data),
            metadata=metadata.model_copy(update={"child_ids": []}, deep=True),
            expires_at=now + timedelta(seconds=ttl_seconds) if ttl_seconds else None,
        )
        self._artifacts[artifact.id] = artifact
        self._index(artifact)
        if parent is not None:
            parent.metadata.child_ids.append(artifact.id)

        logger.debug("Created %s artifact %s", artifact.type.value, artifact.id)
        self._enforce_capacity()
        return artifact.id

    def get(self, artifact_id: str) -> Artifact | None:
        artifact = self._live(artifact_id)
        return artifact.model_copy(deep=True) if artifact else None

    def update(
        self,
        artifact_id: str,
        data: dict[str, Any] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> bool:
        """Merge ``data`` and ``metadata`` into an artifact and bump its version.

        Raises:
            ArtifactError: If ``metadata`` tries to change tree links
        """
        artifact = self._live(artifact_id)
        if artifact is None:
            return False
        metadata = metadata or {}
        forbidden = set(metadata) - _UPDATABLE_METADATA
        if forbidden:
            raise ArtifactError(f"Cannot update artifact metadata keys: {sorted(forbidden)}")

        if data:
            artifact.data.update(copy.deepcopy(data))
        if "tags" in metadata:
            for tag in artifact.metadata.tags:
                self._by_tag[tag].discard(artifact_id)
            self._prune_tags(artifact.metadata.tags)
        if metadata:
            artifact.metadata = artifact.metadata.model_copy(update=metadata)
        if "tags" in metadata:
            for tag in artifact.metadata.tags:
                self._by_tag[tag].add(artifact_id)

        artifact.version += 1
        artifact.updated_at = self._clock()
        return True

    def delete(self, artifact_id: str) -> bool:
        """Delete an artifact and, recursively, its children."""
        artifact = self._artifacts.get(artifact_id)
        if artifact is None:
            return False
        for child_id in list(artifact.metadata.child_ids):
            self.delete(child_id)

        parent_id = artifact.metadata.parent_id
        if parent_id is not None and parent_id in self._artifacts:
            children = self._artifacts[parent_id].metadata.child_ids
            if artifact_id in children:
                children.remove(artifact_id)

        del self._artifacts[artifact_id]
        self._unindex(artifact)
        logger.debug("Deleted artifact %s", artifact_id)
        return True

    # ========================================================================
    # Queries
    # ========================================================================

    def query(self, query: ArtifactQuery | None = None, **criteria: Any) -> list[Artifact]:
        """Return matching artifacts, newest first."""
        query = query or ArtifactQuery(**criteria)
        now = self._clock()

        candidates: set[str] | None = None
        if query.session_id is not None:
            candidates = set(self._by_session.get(query.session_id, ()))
        if query.type is not None:
            ids = self._by_type.get(query.type, set())
            candidates = set(ids) if candidates is None else candidates & ids
        for tag in query.tags or []:
            ids = self._by_tag.get(tag, set())
            candidates = set(ids) if candidates is None else candidates & ids
        if candidates is None:
            candidates = set(self._artifacts)

        results: list[Artifact] = []
        expired: list[str] = []
        for artifact_id in candidates:
            artifact = self._artifacts.get(artifact_id)
            if artifact is None:
                continue
            if artifact.is_expired(now):
                if not query.include_expired:
                    expired.append(artifact_id)
                    continue
            if query.source is not None and artifact.metadata.source != query.source:
                continue
            if query.time_range is not None and not (
                query.time_range.start <= artifact.created_at <= query.time_range.end
            ):
                continue
            results.append(artifact)

        if not query.include_expired:
            for artifact_id in expired:
                self.delete(artifact_id)

        results.sort(key=lambda a: a.created_at, reverse=True)
        if query.limit is not None:
            results = results[: query.limit]
        return [a.model_copy(deep=True) for a in results]

    def session_artifacts(self, session_id: str) -> list[Artifact]:
        return self.query(ArtifactQuery(session_id=session_id))

    def children(self, artifact_id: str) -> list[Artifact]:
        artifact = self._live(artifact_id)
        if artifact is None:
            return []
        return [c for c in (self.get(cid) for cid in artifact.metadata.child_ids) if c]

    def stats(self) -> ArtifactStats:
        now = self._clock()
        stats = ArtifactStats(total_artifacts=len(self._artifacts))
        for artifact in self._artifacts.values():
            type_key = artifact.type.value
            stats.artifacts_by_type[type_key] = stats.artifacts_by_type.get(type_key, 0) + 1
            stats.artifacts_by_session[artifact.session_id] = (
                stats.artifacts_by_session.get(artifact.session_id, 0) + 1
            )
            if artifact.is_expired(now):
                stats.expired_artifacts += 1
            if stats.oldest is None or artifact.created_at < stats.oldest:
                stats.oldest = artifact.created_at
            if stats.newest is None or artifact.created_at > stats.newest:
                stats.newest = artifact.created_at
        return stats

    # ========================================================================
    # Lifecycle
    # ========================================================================

    def delete_session(self, session_id: str) -> int:
        ids = list(self._by_session.get(session_id, ()))
        removed = 0
        for artifact_id in ids:
            # Children may already be gone through a parent's cascade.
            if artifact_id in self._artifacts:
                before = len(self._artifacts)
                self.delete(artifact_id)
                removed += before - len(self._artifacts)
        if removed:
            logger.info("Deleted %d artifacts for session %s", removed, session_id)
        return removed

    def sweep_expired(self) -> int:
        now = self._clock()
        expired = [a.id for a in self._artifacts.values() if a.is_expired(now)]
        removed = 0
        for artifact_id in expired:
            if artifact_id in self._artifacts:
                before = len(self._artifacts)
                self.delete(artifact_id)
                removed += before - len(self._artifacts)
        if removed:
            logger.info("Swept %d expired artifacts", removed)
        return removed

    def attach(self, bus: EventBus) -> str:
        """Drop a session's artifacts when the bus reports it expired."""
        return bus.subscribe([EventType.SESSION_EXPIRED], self._on_session_expired)

    def _on_session_expired(self, event: Event) -> None:
        session_id = event.session_id or event.data.get("session_id")
        if session_id:
            self.delete_session(session_id)

    # ========================================================================
    # Export / import
    # ========================================================================

    def export_json(self, session_id: str | None = None) -> str:
        if session_id is None:
            artifacts = list(self._artifacts.values())
        else:
            artifacts = [self._artifacts[i] for i in self._by_session.get(session_id, ())]
        artifacts.sort(key=lambda a: a.created_at)
        return json.dumps([a.model_dump(mode="json") for a in artifacts], indent=2)

    def import_json(self, text: str) -> int:
        """Load artifacts exported by ``export_json``. Returns the count imported.

        Entries that fail validation, already exist, or reference a parent in
        another session are skipped.
        """
        raw = json.loads(text)
        if not isinstance(raw, list):
            raise ValueError("Artifact export must be a JSON list")

        imported = 0
        for entry in raw:
            try:
                artifact = Artifact.model_validate(entry)
            except PydanticValidationError as e:
                logger.warning("Skipping invalid artifact entry: %s", e)
                continue
            if artifact.id in self._artifacts:
                logger.warning("Skipping duplicate artifact %s", artifact.id)
                continue
            parent_id = artifact.metadata.parent_id
            parent = self._artifacts.get(parent_id) if parent_id else None
            if parent_id and (parent is None or parent.session_id != artifact.session_id):
                logger.warning("Skipping artifact %s with invalid parent", artifact.id)
                continue
            artifact.metadata.child_ids = [
                c for c in artifact.metadata.child_ids if c in self._artifacts
            ]
            self._artifacts[artifact.id] = artifact
            self._index(artifact)
            if parent is not None and artifact.id not in parent.metadata.child_ids:
                parent.metadata.child_ids.append(artifact.id)
            imported += 1

        self._enforce_capacity()
        return imported

    # ========================================================================
    # Typed helpers
    # ========================================================================

    def create_dca_plan(
        self,
        session_id: str,
        plan: dict[str, Any],
        *,
        source: str = "orchestrator",
        tags: list[str] | None = None,
    ) -> str:
        return self.create(
            ArtifactType.DCA_PLAN,
            session_id,
            plan,
            ArtifactMetadata(source=source, tags=["dca", "plan", *(tags or [])]),
        )

    def create_risk_assessment(
        self,
        session_id: str,
        assessment: dict[str, Any],
        *,
        source: str = "risk_scorer",
        parent_id: str | None = None,
    ) -> str:
        level = assessment.get("overall_risk", "unknown")
        return self.create(
            ArtifactType.RISK_ASSESSMENT,
            session_id,
            assessment,
            ArtifactMetadata(
                source=source, tags=["risk", f"risk_{level}"], parent_id=parent_id
            ),
        )

    def create_market_analysis(
        self,
        session_id: str,
        analysis: dict[str, Any],
        *,
        source: str = "market_data",
        ttl_seconds: float | None = None,
    ) -> str:
        token = analysis.get("token_out") or analysis.get("token_in") or "unknown"
        return self.create(
            ArtifactType.MARKET_ANALYSIS,
            session_id,
            analysis,
            ArtifactMetadata(source=source, tags=["market", f"token_{token}"]),
            ttl_seconds=ttl_seconds,
        )

    def create_execution_report(
        self,
        session_id: str,
        report: dict[str, Any],
        *,
        parent_plan_id: str,
        source: str = "scheduler",
    ) -> str:
        status = report.get("status", "unknown")
        return self.create(
            ArtifactType.EXECUTION_REPORT,
            session_id,
            report,
            ArtifactMetadata(
                source=source, tags=["execution", status], parent_id=parent_plan_id
            ),
        )

    # ========================================================================
    # Internals
    # ========================================================================

    def _live(self, artifact_id: str) -> Artifact | None:
        artifact = self._artifacts.get(artifact_id)
        if artifact is None:
            return None
        if artifact.is_expired(self._clock()):
            self.delete(artifact_id)
            return None
        return artifact

    def _index(self, artifact: Artifact) -> None:
        self._by_session[artifact.session_id].add(artifact.id)
        self._by_type[artifact.type].add(artifact.id)
        for tag in artifact.metadata.tags:
            self._by_tag[tag].add(artifact.id)

    def _unindex(self, artifact: Artifact) -> None:
        for index, key in (
            (self._by_session, artifact.session_id),
            (self._by_type, artifact.type),
        ):
            ids = index.get(key)
            if ids is not None:
                ids.discard(artifact.id)
                if not ids:
                    del index[key]
        for tag in artifact.metadata.tags:
            self._by_tag[tag].discard(artifact.id)
        self._prune_tags(artifact.metadata.tags)

    def _prune_tags(self, tags: list[str]) -> None:
        for tag in tags:
            if tag in self._by_tag and not self._by_tag[tag]:
                del self._by_tag[tag]

    def _enforce_capacity(self) -> None:
        while len(self._artifacts) > self.max_artifacts:
            oldest_id = next(iter(self._artifacts))
            logger.debug("Evicting artifact %s (store full)", oldest_id)
            self.delete(oldest_id)
