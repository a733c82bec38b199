"""Artifact registry: content-addressed blobs plus mutable tag aliases."""
from __future__ import annotations

import datetime as dt
import logging
import os
import re
import shutil
import tempfile
import threading
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Set

from sqlalchemy import func
from sqlalchemy.orm import Session, sessionmaker

from .archive import DIGEST_PREFIX, sha256_file
from .config import RetentionConfig
from .credentials import CredentialStore
from .errors import ArtifactNotFound, CredentialNotFound, PushError
from .models import Artifact, utcnow
from .persistence.database import AliasRecord, ArtifactRecord, session_scope

LOGGER = logging.getLogger("conveyor.registry")

TAG_PATTERN = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9._-]{0,127}$")


class ArtifactRegistry:
    """
    Stores artifacts by digest and resolves ``(namespace, tag)`` aliases.

    Blob files are immutable once written. Alias updates happen inside one
    transaction under a process-wide lock, so a reader sees either the old or
    the new digest for a tag and never a missing alias.
    """

    def __init__(
        self,
        registry_dir: Path,
        session_factory: sessionmaker[Session],
        credentials: Optional[CredentialStore] = None,
        credential_id: Optional[str] = None,
        pinned_digests: Optional[Callable[[], Set[str]]] = None,
    ) -> None:
        self._blobs_dir = Path(registry_dir) / "blobs" / "sha256"
        self._blobs_dir.mkdir(parents=True, exist_ok=True)
        self._session_factory = session_factory
        self._credentials = credentials
        self._credential_id = credential_id
        self._pinned_digests = pinned_digests or (lambda: set())
        self._lock = threading.RLock()

    def push(self, artifact: Artifact, tags: Sequence[str]) -> Artifact:
        """Store *artifact* and point every tag at its digest.

        Re-pushing a digest under a tag it already carries changes nothing.
        """
        self._authenticate()
        for tag in tags:
            if not TAG_PATTERN.match(tag):
                raise PushError(f"Invalid tag {tag!r}", kind="invalid")
        namespace = artifact.pipeline

        # Blob and record are written under the lock prune holds while unlinking.
        with self._lock:
            blob = self._store_blob(artifact)
            with session_scope(self._session_factory) as session:
                record = (
                    session.query(ArtifactRecord).filter_by(namespace=namespace, run_id=artifact.run_id).first()
                )
                if record is None:
                    session.add(
                        ArtifactRecord(
                            namespace=namespace,
                            run_id=artifact.run_id,
                            digest=artifact.digest,
                            size_bytes=artifact.size_bytes,
                            created_at=artifact.created_at,
                        )
                    )
                elif record.digest != artifact.digest:
                    raise PushError(
                        f"{namespace} run {artifact.run_id} is already registered as {record.digest}",
                        kind="conflict",
                    )
                for tag in tags:
                    self._point(session, namespace, tag, artifact.digest)
                session.flush()
                aliases = self._aliases_for(session, namespace, artifact.digest)

        LOGGER.info("Pushed %s as %s:%s", artifact.digest[:19], namespace, ",".join(tags))
        return artifact.model_copy(update={"aliases": aliases, "blob_path": blob})

    def pull(self, tag: str, namespace: str) -> Artifact:
        with session_scope(self._session_factory) as session:
            if tag.startswith(DIGEST_PREFIX):
                digest = tag
            else:
                alias = session.query(AliasRecord).filter_by(namespace=namespace, tag=tag).first()
                if alias is None:
                    raise ArtifactNotFound(f"Tag {namespace}:{tag} not found")
                digest = alias.digest
            record = (
                session.query(ArtifactRecord)
                .filter_by(namespace=namespace, digest=digest)
                .order_by(ArtifactRecord.run_id.desc())
                .first()
            )
            if record is None:
                raise ArtifactNotFound(f"Digest {digest} not found in {namespace}")
            artifact = self._to_artifact(session, record)
        if artifact.blob_path is None or not artifact.blob_path.exists():
            raise ArtifactNotFound(f"Blob for {digest} is missing from the registry")
        return artifact

    def resolve(self, digest: str) -> Artifact:
        """Look up a digest in any namespace."""
        with session_scope(self._session_factory) as session:
            record = (
                session.query(ArtifactRecord)
                .filter_by(digest=digest)
                .order_by(ArtifactRecord.run_id.desc())
                .first()
            )
            if record is None:
                raise ArtifactNotFound(f"Digest {digest} not found")
            artifact = self._to_artifact(session, record)
        if artifact.blob_path is None or not artifact.blob_path.exists():
            raise ArtifactNotFound(f"Blob for {digest} is missing from the registry")
        return artifact

    def retag(self, tag: str, digest: str, namespace: str) -> None:
        """Atomically repoint *tag* to *digest*."""
        if not TAG_PATTERN.match(tag):
            raise PushError(f"Invalid tag {tag!r}", kind="invalid")
        with self._lock, session_scope(self._session_factory) as session:
            known = session.query(ArtifactRecord).filter_by(namespace=namespace, digest=digest).first()
            if known is None:
                raise ArtifactNotFound(f"Digest {digest} not found in {namespace}")
            self._point(session, namespace, tag, digest)

    def aliases(self, namespace: str) -> Dict[str, str]:
        with session_scope(self._session_factory) as session:
            rows = session.query(AliasRecord).filter_by(namespace=namespace).order_by(AliasRecord.tag).all()
            return {row.tag: row.digest for row in rows}

    def digests(self) -> Set[str]:
        with session_scope(self._session_factory) as session:
            return {row[0] for row in session.query(ArtifactRecord.digest).distinct().all()}

    def prune(self, policy: RetentionConfig) -> List[str]:
        """
        Remove digests with no aliases that are older than the retention window.

        Numeric run tags beyond the newest ``keep_run_tags`` per namespace are
        expired first. Digests referenced by a deployment slot are never removed.
        """
        removed: List[str] = []
        with self._lock:
            with session_scope(self._session_factory) as session:
                pinned = set(self._pinned_digests())
                if policy.keep_run_tags is not None:
                    self._expire_run_tags(session, policy.keep_run_tags)

                referenced = {row[0] for row in session.query(AliasRecord.digest).distinct().all()}
                cutoff = utcnow() - dt.timedelta(seconds=policy.max_age_seconds)
                newest = (
                    session.query(ArtifactRecord.digest, func.max(ArtifactRecord.created_at))
                    .group_by(ArtifactRecord.digest)
                    .all()
                )
                for digest, created_at in newest:
                    if digest in referenced or digest in pinned:
                        continue
                    if _as_utc(created_at) >= cutoff:
                        continue
                    session.query(ArtifactRecord).filter_by(digest=digest).delete()
                    removed.append(digest)

            # Records are committed; unlink before releasing the lock.
            for digest in removed:
                blob = self._blob_path(digest)
                if blob.exists():
                    blob.unlink()
                LOGGER.info("Pruned %s", digest[:19])
        return sorted(removed)

    def _expire_run_tags(self, session: Session, keep: int) -> None:
        namespaces = [row[0] for row in session.query(AliasRecord.namespace).distinct().all()]
        for namespace in namespaces:
            numeric = [
                alias
                for alias in session.query(AliasRecord).filter_by(namespace=namespace).all()
                if alias.tag.isdigit()
            ]
            numeric.sort(key=lambda alias: int(alias.tag), reverse=True)
            for alias in numeric[keep:]:
                session.delete(alias)
        session.flush()

    def _authenticate(self) -> None:
        if not self._credential_id:
            return
        if self._credentials is None:
            raise PushError(f"No credential store for {self._credential_id!r}", kind="auth")
        try:
            self._credentials.lookup(self._credential_id)
        except CredentialNotFound as exc:
            raise PushError(str(exc), kind="auth") from exc

    def _store_blob(self, artifact: Artifact) -> Path:
        target = self._blob_path(artifact.digest)
        if target.exists():
            return target
        source = artifact.blob_path
        if source is None or not Path(source).exists():
            raise PushError(f"Artifact file for {artifact.digest} is missing", kind="invalid")
        if sha256_file(Path(source)) != artifact.digest:
            raise PushError(f"Artifact file does not match digest {artifact.digest}", kind="integrity")
        tmp_path: Optional[Path] = None
        try:
            fd, tmp_name = tempfile.mkstemp(prefix=".upload-", dir=self._blobs_dir)
            os.close(fd)
            tmp_path = Path(tmp_name)
            shutil.copyfile(source, tmp_path)
            os.replace(tmp_path, target)
        except OSError as exc:
            raise PushError(f"Could not store blob {artifact.digest}: {exc}", kind="network") from exc
        finally:
            if tmp_path is not None and tmp_path.exists():
                tmp_path.unlink()
        return target

    def _blob_path(self, digest: str) -> Path:
        return self._blobs_dir / digest.split(":", 1)[-1]

    @staticmethod
    def _point(session: Session, namespace: str, tag: str, digest: str) -> None:
        alias = session.query(AliasRecord).filter_by(namespace=namespace, tag=tag).first()
        if alias is None:
            session.add(AliasRecord(namespace=namespace, tag=tag, digest=digest, updated_at=utcnow()))
        elif alias.digest != digest:
            alias.digest = digest
            alias.updated_at = utcnow()

    @staticmethod
    def _aliases_for(session: Session, namespace: str, digest: str) -> List[str]:
        rows = session.query(AliasRecord).filter_by(namespace=namespace, digest=digest).order_by(AliasRecord.tag)
        return [row.tag for row in rows]

    def _to_artifact(self, session: Session, record: ArtifactRecord) -> Artifact:
        return Artifact(
            pipeline=record.namespace,
            run_id=record.run_id,
            digest=record.digest,
            size_bytes=record.size_bytes,
            created_at=_as_utc(record.created_at),
            aliases=self._aliases_for(session, record.namespace, record.digest),
            blob_path=self._blob_path(record.digest),
        )


def _as_utc(value: dt.datetime) -> dt.datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=dt.timezone.utc)
    return value


__all__ = ["ArtifactRegistry", "TAG_PATTERN"]
