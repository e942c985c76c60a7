"""Baseline store — versioned reference screenshots per changeset, route and viewport."""

from __future__ import annotations

import hashlib
import json
import logging
import re
import threading
from datetime import datetime, timezone
from pathlib import Path

from pydantic import ValidationError

from visreg.errors import (
    BaselineStoreError,
    ErrorKind,
    ManifestCorruptError,
    VisualRegressionError,
)
from visreg.models.baseline import (
    BaselineManifest,
    BaselineRecord,
    ManifestRoute,
    Viewport,
    baseline_key,
)

from .storage import ArtifactStorage, FileSystemStorage

logger = logging.getLogger(__name__)

MANIFEST_NAME = "metadata.json"
_CHANGESET_DIR_RE = re.compile(r"^pr-(\d+)$")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def _parse_ts(value: str) -> datetime:
    try:
        ts = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return datetime.min.replace(tzinfo=timezone.utc)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


class BaselineStore:
    """Manages baseline images and the per-changeset manifest that indexes them.

    Layout under the storage root::

        pr-<id>/metadata.json
        pr-<id>/<screenshot>@<w>x<h>-<key8>-<hash12>.png

    Image names carry a digest of the full baseline key and of the content.
    A new capture never overwrites the file the current manifest points at,
    and two keys never share a file. The manifest is rewritten atomically
    after the image is in place, and the superseded image is removed only
    once the new manifest is committed.
    """

    def __init__(self, baselines_dir: Path | str, storage: ArtifactStorage | None = None):
        self.baselines_dir = Path(baselines_dir)
        self.storage = storage or FileSystemStorage(self.baselines_dir)
        self._locks: dict[int, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    # ------------------------------------------------------------------
    # Paths and locking
    # ------------------------------------------------------------------

    @staticmethod
    def changeset_dir(changeset_id: int) -> str:
        return f"pr-{changeset_id}"

    def _manifest_path(self, changeset_id: int) -> str:
        return f"{self.changeset_dir(changeset_id)}/{MANIFEST_NAME}"

    def _image_rel_path(self, record: BaselineRecord) -> str:
        return f"{self.changeset_dir(record.changeset_id)}/{record.file_path}"

    def _lock(self, changeset_id: int) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(changeset_id)
            if lock is None:
                lock = self._locks[changeset_id] = threading.Lock()
            return lock

    def image_path(self, record: BaselineRecord) -> str:
        """Return the resolved storage location of a baseline image."""
        return self.storage.resolve(self._image_rel_path(record))

    # ------------------------------------------------------------------
    # Manifest
    # ------------------------------------------------------------------

    def load_manifest(self, changeset_id: int) -> BaselineManifest | None:
        """Load a changeset's manifest, or None if it has no baselines yet.

        An unreadable or invalid manifest raises MANIFEST_CORRUPT.
        """
        path = self._manifest_path(changeset_id)
        if not self.storage.exists(path):
            return None
        try:
            data = json.loads(self.storage.read_bytes(path))
            manifest = BaselineManifest.model_validate(data)
        except (OSError, ValueError, ValidationError) as e:
            logger.error("Baseline manifest for changeset #%d is corrupt: %s", changeset_id, e)
            raise ManifestCorruptError(
                f"Baseline manifest for changeset #{changeset_id} is unreadable: {e}"
            ) from e
        if manifest.changeset_id != changeset_id:
            raise ManifestCorruptError(
                f"Manifest in {self.changeset_dir(changeset_id)} belongs to "
                f"changeset #{manifest.changeset_id}"
            )
        return manifest

    def _write_manifest(self, manifest: BaselineManifest) -> None:
        payload = json.dumps(manifest.model_dump(mode="json"), indent=2).encode("utf-8")
        self.storage.write_bytes(self._manifest_path(manifest.changeset_id), payload)

    # ------------------------------------------------------------------
    # Capture and lookup
    # ------------------------------------------------------------------

    def capture(
        self,
        changeset_id: int,
        route: str,
        screenshot_name: str,
        viewport: Viewport,
        image_bytes: bytes,
        test_url: str = "",
    ) -> BaselineRecord:
        """Store a new baseline, superseding any record at the same key."""
        if not image_bytes:
            raise BaselineStoreError(f"Refusing to store an empty baseline for {route}", route=route)

        key = baseline_key(route, screenshot_name, viewport)
        image_hash = hashlib.sha256(image_bytes).hexdigest()
        key_digest = hashlib.sha256(key.encode("utf-8")).hexdigest()
        file_name = f"{screenshot_name}@{viewport.label}-{key_digest[:8]}-{image_hash[:12]}.png"
        image_rel = f"{self.changeset_dir(changeset_id)}/{file_name}"

        with self._lock(changeset_id):
            manifest = self.load_manifest(changeset_id) or BaselineManifest(
                changeset_id=changeset_id, test_url=test_url,
            )
            previous = manifest.records.get(key)

            try:
                self.storage.write_bytes(image_rel, image_bytes)
            except OSError as e:
                raise BaselineStoreError(f"Failed to write baseline image for {route}: {e}",
                                         route=route) from e

            captured_at = _now_iso()
            record = BaselineRecord(
                changeset_id=changeset_id,
                route=route,
                screenshot_name=screenshot_name,
                file_path=file_name,
                captured_at=captured_at,
                viewport=viewport,
                image_hash=image_hash,
            )
            manifest.records[key] = record
            manifest.captured_at = captured_at
            if test_url:
                manifest.test_url = test_url
            if not any(r.path == route and r.screenshot_name == screenshot_name
                       for r in manifest.routes):
                manifest.routes.append(ManifestRoute(path=route, screenshot_name=screenshot_name))

            try:
                self._write_manifest(manifest)
            except OSError as e:
                if previous is None or previous.file_path != file_name:
                    self.storage.delete(image_rel)
                raise BaselineStoreError(
                    f"Failed to update baseline manifest for changeset #{changeset_id}: {e}",
                    route=route,
                ) from e

            if previous is not None and previous.file_path != file_name:
                try:
                    self.storage.delete(self._image_rel_path(previous))
                except OSError as e:
                    logger.warning("Could not remove superseded baseline %s: %s",
                                   previous.file_path, e)

        logger.info("Stored baseline for %s (%s) in changeset #%d",
                    route, viewport.label, changeset_id)
        return record

    def lookup(
        self,
        changeset_id: int,
        route: str,
        screenshot_name: str,
        viewport: Viewport,
    ) -> BaselineRecord | None:
        """Return the live baseline for a key within one changeset."""
        manifest = self.load_manifest(changeset_id)
        if manifest is None:
            return None
        record = manifest.records.get(baseline_key(route, screenshot_name, viewport))
        if record is None:
            return None
        if not self.storage.exists(self._image_rel_path(record)):
            raise BaselineStoreError(
                f"Baseline image missing for {route} ({viewport.label}) in changeset #{changeset_id}",
                route=route,
            )
        return record

    def lookup_prior_changeset(
        self,
        route: str,
        screenshot_name: str,
        viewport: Viewport,
        changeset_id: int | None = None,
    ) -> BaselineRecord | None:
        """Resolve the baseline to compare against.

        An exact match in ``changeset_id`` wins. Otherwise the most recently
        captured record for the key across all other changesets is returned,
        ties broken by changeset id (highest first). Corrupt manifests of
        other changesets are skipped.
        """
        if changeset_id is not None:
            record = self.lookup(changeset_id, route, screenshot_name, viewport)
            if record is not None:
                return record

        key = baseline_key(route, screenshot_name, viewport)
        candidates: list[BaselineRecord] = []
        for other_id in self.list_changesets():
            if other_id == changeset_id:
                continue
            try:
                manifest = self.load_manifest(other_id)
            except VisualRegressionError as e:
                if e.kind != ErrorKind.MANIFEST_CORRUPT:
                    raise
                logger.warning("Skipping changeset #%d during baseline resolution: %s", other_id, e)
                continue
            if manifest is None:
                continue
            record = manifest.records.get(key)
            if record is not None and self.storage.exists(self._image_rel_path(record)):
                candidates.append(record)

        if not candidates:
            return None
        best = max(candidates, key=lambda r: (_parse_ts(r.captured_at), r.changeset_id))
        logger.debug("Resolved baseline for %s from changeset #%d", route, best.changeset_id)
        return best

    def read_image(self, record: BaselineRecord) -> bytes:
        try:
            return self.storage.read_bytes(self._image_rel_path(record))
        except OSError as e:
            raise BaselineStoreError(f"Failed to read baseline image for {record.route}: {e}",
                                     route=record.route) from e

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def list_baselines(self, changeset_id: int) -> list[BaselineRecord]:
        manifest = self.load_manifest(changeset_id)
        return list(manifest.records.values()) if manifest else []

    def list_changesets(self) -> list[int]:
        """Return ids of all changesets with a baseline directory, newest id first."""
        ids = []
        for name in self.storage.list_dirs():
            match = _CHANGESET_DIR_RE.match(name)
            if match:
                ids.append(int(match.group(1)))
        return sorted(ids, reverse=True)

    def delete_baseline(
        self,
        changeset_id: int,
        route: str,
        screenshot_name: str,
        viewport: Viewport,
    ) -> bool:
        key = baseline_key(route, screenshot_name, viewport)
        with self._lock(changeset_id):
            manifest = self.load_manifest(changeset_id)
            if manifest is None or key not in manifest.records:
                return False
            record = manifest.records.pop(key)
            if not any(r.route == route and r.screenshot_name == screenshot_name
                       for r in manifest.records.values()):
                manifest.routes = [
                    r for r in manifest.routes
                    if not (r.path == route and r.screenshot_name == screenshot_name)
                ]
            try:
                self._write_manifest(manifest)
            except OSError as e:
                raise BaselineStoreError(f"Failed to update manifest: {e}", route=route) from e
            self.storage.delete(self._image_rel_path(record))
        logger.info("Deleted baseline %s from changeset #%d", key, changeset_id)
        return True

    def delete_changeset(self, changeset_id: int) -> int:
        """Delete every baseline of a changeset. Returns the number of images removed."""
        with self._lock(changeset_id):
            deleted = self.storage.delete_tree(self.changeset_dir(changeset_id))
        logger.info("Deleted %d baselines for changeset #%d", deleted, changeset_id)
        return deleted

    def storage_size(self) -> int:
        return self.storage.size()
