"""
Helpers for tracking the state of the vault's notes.

A note's *fingerprint* is a cheap content digest used to decide whether it
needs re-embedding. A *manifest* maps vault-relative paths to a state token
(a stat signature or a fingerprint); comparing two manifests yields the added,
updated and removed paths. The Merkle root over a manifest seals an index
snapshot so a tampered or truncated snapshot can be detected on load.
"""

import hashlib
import logging
from typing import Dict, List, Optional

from pymerkle import InmemoryTree as MerkleTree

logger = logging.getLogger(__name__)


def fingerprint_content(data: bytes) -> str:
    """Returns a short, stable digest of a note's raw bytes."""
    return hashlib.blake2b(data, digest_size=8).hexdigest()


def stat_signature(modified_timestamp: float, size: int) -> str:
    """Returns the stat token used for the cheap first-stage change check."""
    return f"{modified_timestamp:.6f}:{size}"


def build_manifest_tree(manifest: Dict[str, str]) -> MerkleTree:
    """
    Builds a Merkle tree over a manifest.

    Entries are appended in path order so the root does not depend on the
    dictionary's insertion order.

    Args:
        manifest: Mapping of vault-relative path to state token.

    Returns:
        The populated MerkleTree.
    """
    tree = MerkleTree()
    for path in sorted(manifest):
        tree.append_entry(f"{path}\x00{manifest[path]}".encode("utf-8"))
    return tree


def manifest_root_hash(manifest: Dict[str, str]) -> Optional[str]:
    """Returns the hex Merkle root of a manifest, or None when it is empty."""
    if not manifest:
        return None
    tree = build_manifest_tree(manifest)
    return tree.get_state().hex()


def compare_states(
    old_manifest: Dict[str, str], new_manifest: Dict[str, str]
) -> Dict[str, List[str]]:
    """
    Compares two manifests to determine which paths were added, updated, or removed.

    Args:
        old_manifest: The manifest of the stored index.
        new_manifest: The manifest of the live file store.

    Returns:
        A dictionary with three keys: 'added', 'updated', and 'removed', each
        containing a sorted list of paths.
    """
    old_files = set(old_manifest.keys())
    new_files = set(new_manifest.keys())

    added = sorted(new_files - old_files)
    removed = sorted(old_files - new_files)
    updated = sorted(
        path
        for path in old_files.intersection(new_files)
        if old_manifest[path] != new_manifest[path]
    )

    logger.debug(
        f"Manifest diff: {len(added)} added, {len(updated)} updated, "
        f"{len(removed)} removed"
    )
    return {"added": added, "updated": updated, "removed": removed}
