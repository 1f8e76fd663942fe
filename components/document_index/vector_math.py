"""Cosine similarity over stored embedding vectors."""

import logging
from typing import Iterable, List, Sequence, Tuple

import numpy as np

from .models import EmbeddingRecord

logger = logging.getLogger(__name__)


class VectorMatrix:
    """Row-normalized matrix of note vectors, one row per path."""

    def __init__(self, paths: List[str], matrix: np.ndarray):
        self.paths = paths
        self.matrix = matrix
        self._row = {path: i for i, path in enumerate(paths)}

    @classmethod
    def from_records(cls, records: Iterable[EmbeddingRecord]) -> "VectorMatrix":
        """
        Stacks the records' vectors into a normalized matrix.

        Vectors whose dimension differs from the first record's are skipped;
        they come from a different model and cannot be compared.
        """
        paths: List[str] = []
        vectors: List[np.ndarray] = []
        dim = None
        for record in sorted(records, key=lambda r: r.path):
            if not record.vector:
                continue
            if dim is None:
                dim = len(record.vector)
            elif len(record.vector) != dim:
                logger.debug(
                    f"Skipping vector of {record.path}: dimension "
                    f"{len(record.vector)} != {dim}"
                )
                continue
            paths.append(record.path)
            vectors.append(np.asarray(record.vector, dtype=np.float32))

        if not vectors:
            return cls([], np.zeros((0, 0), dtype=np.float32))
        return cls(paths, _normalize_rows(np.vstack(vectors)))

    def __len__(self) -> int:
        return len(self.paths)

    def __contains__(self, path: str) -> bool:
        return path in self._row

    @property
    def dimension(self) -> int:
        return int(self.matrix.shape[1]) if len(self.paths) else 0

    def scores(self, vector: Sequence[float]) -> np.ndarray:
        """Cosine similarity of ``vector`` against every row."""
        if not self.paths:
            return np.zeros(0, dtype=np.float32)
        query = np.asarray(vector, dtype=np.float32)
        if query.shape[0] != self.dimension:
            logger.warning(
                f"Query vector dimension {query.shape[0]} does not match index "
                f"dimension {self.dimension}"
            )
            return np.zeros(len(self.paths), dtype=np.float32)
        norm = np.linalg.norm(query)
        if norm == 0:
            return np.zeros(len(self.paths), dtype=np.float32)
        return self.matrix @ (query / norm)

    def scores_for(self, path: str) -> np.ndarray:
        """Cosine similarity of a stored row against every row."""
        return self.matrix @ self.matrix[self._row[path]]

    def top_matches(
        self, scores: np.ndarray, top_k: int, threshold: float, exclude: str = ""
    ) -> List[Tuple[str, float]]:
        """Returns up to ``top_k`` (path, score) pairs with score >= threshold."""
        if top_k <= 0 or scores.size == 0:
            return []
        candidates = np.flatnonzero(scores >= threshold)
        ranked = sorted(
            candidates, key=lambda i: (-float(scores[i]), self.paths[i])
        )
        matches = []
        for i in ranked:
            if self.paths[i] == exclude:
                continue
            matches.append((self.paths[i], min(1.0, max(0.0, float(scores[i])))))
            if len(matches) >= top_k:
                break
        return matches


def _normalize_rows(matrix: np.ndarray) -> np.ndarray:
    norms = np.linalg.norm(matrix, axis=1, keepdims=True)
    norms[norms == 0] = 1.0
    return matrix / norms
