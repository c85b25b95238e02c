from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, ConfigDict, model_validator

MANIFEST_KEY = "manifest"


def build_version(resources: dict[str, str], core: list[str]) -> str:
    """Content hash of a manifest/core pair: ``'sha256:<16 hex>'``."""
    payload = json.dumps({"resources": resources, "core": core}, sort_keys=True)
    return "sha256:" + hashlib.sha256(payload.encode("utf-8")).hexdigest()[:16]


class BuildConfig(BaseModel):
    """Build-time artefact injected into every agent.

    ``resources`` is the Resource Manifest (resource key → fingerprint) and
    ``core`` the ordered Core Shell Set. A new deployment produces a new
    value wholesale; nothing mutates it at runtime.
    """

    model_config = ConfigDict(frozen=True)

    resources: dict[str, str]
    core: tuple[str, ...] = ()
    version: str = ""

    @model_validator(mode="before")
    @classmethod
    def _fill_version(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("version"):
            resources = data.get("resources") or {}
            core = list(data.get("core") or [])
            data = {**data, "version": build_version(dict(resources), core)}
        return data

    @model_validator(mode="after")
    def _check_consistency(self) -> BuildConfig:
        for key, fingerprint in self.resources.items():
            if not key:
                raise ValueError("Resource keys must be non-empty")
            if not fingerprint:
                raise ValueError(f"Empty fingerprint for resource {key!r}")
        missing = [key for key in self.core if key not in self.resources]
        if missing:
            raise ValueError(f"Core shell keys missing from manifest: {missing}")
        return self


@dataclass(frozen=True)
class CacheNames:
    """Stable identifiers of the three cache namespaces."""

    staging: str = "cachesync-temp-cache"
    persistent: str = "cachesync-app-cache"
    manifest: str = "cachesync-app-manifest"
