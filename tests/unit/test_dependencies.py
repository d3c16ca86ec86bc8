# Unit tests for api.dependencies.run_blocking:
#   - a timed-out call that has not committed rolls back
#   - a call that committed before the timeout returns its result
#   - a plain slow call surfaces as ModelUnavailable

from __future__ import annotations

import asyncio
import time
from concurrent.futures import ThreadPoolExecutor
from types import SimpleNamespace

import pytest

import api.dependencies as dependencies
from api.dependencies import run_blocking
from conftest import ACCOUNT, axis, observation
from core.catalog.errors import ModelUnavailable
from core.catalog.models import BoundingBox


def _request(executor):
    return SimpleNamespace(app=SimpleNamespace(state=SimpleNamespace(executor=executor)))


@pytest.fixture
def pool():
    executor = ThreadPoolExecutor(max_workers=1)
    yield executor
    executor.shutdown(wait=True)


@pytest.fixture
def short_timeout(monkeypatch):
    monkeypatch.setattr(dependencies, "_CALL_TIMEOUT", 0.2)


class TestRunBlocking:

    def test_returns_result(self, pool, catalog, asset):
        faces = asyncio.run(run_blocking(_request(pool), catalog.get_faces_by_id, ACCOUNT, asset.id))
        assert faces == []

    def test_timeout_rolls_back_uncommitted_detection(
        self, pool, short_timeout, catalog, analyzer, asset, monkeypatch
    ):
        analyzer.observations = [observation(axis(0))]
        analyze = analyzer.analyze

        def slow_analyze(image_bytes):
            time.sleep(0.5)
            return analyze(image_bytes)

        monkeypatch.setattr(analyzer, "analyze", slow_analyze)

        with pytest.raises(ModelUnavailable):
            asyncio.run(
                run_blocking(_request(pool), catalog.detect_faces, ACCOUNT, asset.id, b"image")
            )
        pool.shutdown(wait=True)

        assert analyzer.calls == 1
        assert catalog.get_faces_by_id(ACCOUNT, asset.id) == []
        assert catalog.index.size(ACCOUNT) == 0
        catalog.check_invariants()

    def test_committed_work_wins_over_timeout(self, pool, short_timeout, catalog, asset):
        def create_then_linger():
            face = catalog.create_face(ACCOUNT, asset.id, BoundingBox(0, 0, 10, 10), embedding=axis(0))
            time.sleep(0.4)
            return face

        face = asyncio.run(run_blocking(_request(pool), create_then_linger))

        assert catalog.get_face(ACCOUNT, face.id).id == face.id
        assert catalog.index.size(ACCOUNT) == 1

    def test_slow_read_times_out(self, pool, short_timeout, catalog, asset):
        def slow_read():
            time.sleep(0.5)
            return catalog.get_faces_by_id(ACCOUNT, asset.id)

        with pytest.raises(ModelUnavailable):
            asyncio.run(run_blocking(_request(pool), slow_read))
