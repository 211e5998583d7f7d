"""
Test the matching backends
"""

from aiohttp import web
from aiohttp import test_utils

from photo_extractor.core.config import WorkerConfig
from photo_extractor.scanner.matcher import (
    MockMatcher, RemoteMatcher, cosine_similarity, create_matcher
)


def test_cosine_similarity():
    assert cosine_similarity([1.0, 0.0], [1.0, 0.0]) == 1.0
    assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == 0.0
    assert cosine_similarity([], [1.0]) == 0.0
    assert cosine_similarity([0.0, 0.0], [1.0, 1.0]) == 0.0


async def test_mock_matcher_is_deterministic():
    matcher = MockMatcher(threshold=0.6)
    fingerprints = [[0.1, 0.2]]

    results = [await matcher.evaluate(f"image-{i}".encode(), fingerprints) for i in range(200)]
    again = [await matcher.evaluate(f"image-{i}".encode(), fingerprints) for i in range(200)]

    assert results == again
    with_faces = sum(1 for r in results if r.faces_detected)
    assert 100 < with_faces < 180
    for result in results:
        assert 0.0 <= result.confidence <= 1.0
        assert result.is_match == (result.confidence > 0.6)

    empty = await matcher.evaluate(b"", fingerprints)
    assert not empty.is_match


async def test_remote_matcher_compares_embeddings():
    async def embed(request):
        await request.post()
        return web.json_response({"embeddings": [[0.0, 1.0], [1.0, 0.1]]})

    app = web.Application()
    app.router.add_post("/embed", embed)
    server = test_utils.TestServer(app)
    await server.start_server()

    matcher = RemoteMatcher(str(server.make_url("/embed")), threshold=0.6)
    try:
        result = await matcher.evaluate(b"jpeg", [[1.0, 0.0]])
    finally:
        await matcher.close()
        await server.close()

    assert result.faces_detected == 2
    assert result.is_match
    assert result.confidence > 0.99


def test_mock_mode_selects_mock_matcher():
    assert isinstance(create_matcher(WorkerConfig(mock_mode=True)), MockMatcher)
    remote = create_matcher(WorkerConfig(mock_mode=False, matcher_url="http://matcher/embed"))
    assert isinstance(remote, RemoteMatcher)
