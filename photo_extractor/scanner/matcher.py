"""
Face matching backends
The pipeline only depends on the evaluate() contract
"""

import hashlib
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional, Sequence
import aiohttp
import structlog

logger = structlog.get_logger()


@dataclass
class MatchResult:
    is_match: bool
    confidence: float
    faces_detected: int = 0


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity of two vectors, 0.0 when either is empty or zero"""
    if not a or not b or len(a) != len(b):
        return 0.0

    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


class Matcher(ABC):
    """Decides whether an image contains the reference identity"""

    def __init__(self, threshold: float = 0.6):
        self.threshold = threshold

    @abstractmethod
    async def evaluate(
        self,
        image_bytes: bytes,
        reference_fingerprints: List[List[float]]
    ) -> MatchResult:
        ...

    async def close(self):
        pass


class MockMatcher(Matcher):
    """
    Development matcher
    Confidence is derived from a content hash, so the same bytes always
    produce the same decision. Roughly 70% of images contain a face.
    """

    def __init__(self, threshold: float = 0.6, face_rate: float = 0.7):
        super().__init__(threshold)
        self.face_rate = face_rate

    async def evaluate(
        self,
        image_bytes: bytes,
        reference_fingerprints: List[List[float]]
    ) -> MatchResult:
        if not image_bytes:
            return MatchResult(is_match=False, confidence=0.0, faces_detected=0)

        digest = hashlib.sha256(image_bytes).digest()
        face_roll = digest[0] / 255.0
        if face_roll >= self.face_rate or not reference_fingerprints:
            return MatchResult(is_match=False, confidence=0.0, faces_detected=0)

        confidence = round(int.from_bytes(digest[1:3], "big") / 65535.0, 4)
        return MatchResult(
            is_match=confidence > self.threshold,
            confidence=confidence,
            faces_detected=1 + digest[3] % 3,
        )


class RemoteMatcher(Matcher):
    """
    Matcher backed by an external face-embedding service

    The service receives the image and answers with the embeddings of the
    faces it found; each is compared with every reference fingerprint.
    """

    def __init__(
        self,
        endpoint: str,
        threshold: float = 0.6,
        timeout_seconds: int = 30,
        http_session: Optional[aiohttp.ClientSession] = None
    ):
        super().__init__(threshold)
        self.endpoint = endpoint
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._session = http_session
        self._owns_session = http_session is None
        self.logger = logger.bind(component="matcher")

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def evaluate(
        self,
        image_bytes: bytes,
        reference_fingerprints: List[List[float]]
    ) -> MatchResult:
        session = await self._get_session()
        form = aiohttp.FormData()
        form.add_field(
            "image", image_bytes,
            filename="image.jpg", content_type="application/octet-stream"
        )

        async with session.post(self.endpoint, data=form, timeout=self.timeout) as response:
            response.raise_for_status()
            payload = await response.json()

        embeddings = payload.get("embeddings") or []
        best = 0.0
        for embedding in embeddings:
            for reference in reference_fingerprints:
                best = max(best, cosine_similarity(embedding, reference))

        return MatchResult(
            is_match=best > self.threshold,
            confidence=round(best, 4),
            faces_detected=len(embeddings),
        )

    async def close(self):
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()


def create_matcher(worker_config) -> Matcher:
    """Pick the matching backend from configuration"""
    if worker_config.mock_mode or not worker_config.matcher_url:
        logger.warning("Using mock face matching")
        return MockMatcher(threshold=worker_config.match_threshold)
    return RemoteMatcher(worker_config.matcher_url, threshold=worker_config.match_threshold)
