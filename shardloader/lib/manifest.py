"""Manifest building and upload.

A manifest lists every staged blob of a load cycle so the bulk load sees
them as one unit.
"""

from __future__ import annotations

import logging
from typing import Sequence

from shardloader.lib.models import Manifest, ShardReadResult
from shardloader.lib.stage import BlobStage

logger = logging.getLogger(__name__)

__all__ = ["MANIFEST_NAME", "build_manifest", "upload_manifest"]

MANIFEST_NAME = "manifest.json"


def build_manifest(results: Sequence[ShardReadResult]) -> Manifest:
    """One mandatory entry per staged blob of every shard that read records."""
    manifest = Manifest()
    for result in results:
        if not result.has_records:
            continue
        for url in result.staged_blob_urls:
            manifest.add(url, mandatory=True)
    return manifest


def upload_manifest(stage: BlobStage, manifest: Manifest, prefix: str) -> str:
    """Store a manifest as ``<prefix>manifest.json`` and return its URL."""
    url = stage.put_bytes(
        manifest.to_json().encode("utf-8"),
        prefix + MANIFEST_NAME,
        content_type="application/json",
    )
    logger.info("Uploaded manifest with %d entries to %s", len(manifest), url)
    return url
