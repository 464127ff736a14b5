"""
On-disk store for the Fortnox OAuth settings and access token.

The whole ApiKeys blob lives under one fixed key in a small JSON file and is
always read and written as a unit: callers load(), change fields, save().
"""
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Optional

from models.credentials import ApiKeys

logger = logging.getLogger(__name__)

STORAGE_KEY = "apiKeys"


class CredentialStore:

    def __init__(self, path: Path, default_redirect_uri: str = "") -> None:
        self.path = Path(path)
        self.default_redirect_uri = default_redirect_uri

    def load(self) -> ApiKeys:
        """Return the stored keys, or empty keys if nothing usable is stored."""
        blob: Optional[dict] = None
        if self.path.exists():
            try:
                with open(self.path, encoding="utf-8") as f:
                    blob = json.load(f).get(STORAGE_KEY)
            except (OSError, ValueError, AttributeError) as exc:
                logger.warning("Failed to read credentials from %s: %s", self.path, exc)

        keys = ApiKeys.model_validate(blob) if isinstance(blob, dict) else ApiKeys()
        if not keys.fortnox_redirect_uri:
            keys.fortnox_redirect_uri = self.default_redirect_uri
        return keys

    def save(self, keys: ApiKeys) -> None:
        """Replace the stored blob with *keys* (atomic write)."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = {STORAGE_KEY: keys.model_dump(by_alias=True)}
        fd, tmp = tempfile.mkstemp(dir=self.path.parent, prefix=".api_keys.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2)
            os.replace(tmp, self.path)
        except Exception:
            Path(tmp).unlink(missing_ok=True)
            raise
        try:
            os.chmod(self.path, 0o600)
        except OSError as exc:
            logger.warning("Could not restrict permissions on %s: %s", self.path, exc)
        logger.debug("Credentials saved to %s", self.path)

    def clear(self) -> None:
        """Forget every stored key."""
        self.path.unlink(missing_ok=True)
        logger.info("Credentials cleared: %s", self.path)
