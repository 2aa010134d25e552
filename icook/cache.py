"""On-disk caches used by the API client.

``SnapshotCache`` keeps the last successful listing per scope so callers can
keep working offline. ``ImageCache`` keeps one downloaded image per recipe,
named after a version token derived from the recipe's modification time.
"""

import json
import logging
import os
import re
import tempfile
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger(__name__)


def sanitize(value) -> str:
    return re.sub(r"[^A-Za-z0-9_-]+", "_", str(value)).strip("_") or "_"


def version_token(moment: datetime) -> str:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return f"v{int(moment.timestamp()) * 1000 + moment.microsecond // 1000}"


def _write_atomic(path: Path, data: bytes):
    fd, tmp = tempfile.mkstemp(dir=str(path.parent), prefix=".tmp-")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        os.replace(tmp, path)
    except BaseException:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise


class SnapshotCache:
    def __init__(self, root):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def path(self, *scope) -> Path:
        return self.root / ("-".join(sanitize(s) for s in scope) + ".json")

    def save(self, payload, *scope):
        _write_atomic(self.path(*scope), json.dumps(payload, ensure_ascii=False).encode("utf-8"))

    def load(self, *scope):
        p = self.path(*scope)
        if not p.exists():
            return None
        try:
            return json.loads(p.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning("Ignoring unreadable snapshot %s: %s", p.name, e)
            return None

    def clear(self):
        for p in self.root.glob("*.json"):
            p.unlink()


class ImageCache:
    SUFFIX = ".asset"

    def __init__(self, root):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _prefix(self, recipe_id) -> str:
        return f"recipe-{sanitize(recipe_id)}_"

    def _versions(self, recipe_id):
        prefix = self._prefix(recipe_id)
        found = []
        for p in self.root.glob(prefix + "v*" + self.SUFFIX):
            token = p.name[len(prefix):-len(self.SUFFIX)]
            try:
                found.append((int(token[1:]), p))
            except ValueError:
                continue
        return [p for _, p in sorted(found)]

    def path_for(self, recipe_id, token: str) -> Path:
        return self.root / f"{self._prefix(recipe_id)}{token}{self.SUFFIX}"

    def cached_path(self, recipe_id, token: str = None):
        """Exact version when cached, otherwise the newest cached version."""
        if token:
            exact = self.path_for(recipe_id, token)
            if exact.exists():
                return exact
        versions = self._versions(recipe_id)
        return versions[-1] if versions else None

    def store(self, recipe_id, token: str, data: bytes):
        if not data:
            logger.debug("Empty image for recipe %s; keeping cached copy", recipe_id)
            return self.cached_path(recipe_id)
        destination = self.path_for(recipe_id, token)
        _write_atomic(destination, data)
        for old in self._versions(recipe_id):
            if old != destination:
                old.unlink()
        return destination

    def purge(self, recipe_id):
        for p in self._versions(recipe_id):
            p.unlink()
