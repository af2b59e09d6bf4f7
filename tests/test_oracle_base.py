from __future__ import annotations

import asyncio

import pytest

from conftest import ClosableOracle, OverlapTrackingOracle, ScriptedOracle
from deepcrawl.models.oracle import ReviewRequest
from deepcrawl.oracle.base import (
    PerWorkerOracleProvider,
    SerializedOracle,
    SerializedOracleProvider,
    SharedOracleProvider,
    accept_disambiguation,
    build_oracle_provider,
)


def test_accept_disambiguation():
    assert accept_disambiguation("jaguar", '"jaguar cat"') == "jaguar cat"
    assert accept_disambiguation("jaguar", "   ") == "jaguar"
    assert accept_disambiguation("jaguar", None) == "jaguar"
    assert accept_disambiguation("jaguar", "j" * 201) == "jaguar"
    assert accept_disambiguation("jaguar", "j" * 200) == "j" * 200


def test_per_worker_provider_reuses_session_per_worker():
    provider = PerWorkerOracleProvider(ScriptedOracle)

    first = provider.session_for_worker(0)
    assert provider.session_for_worker(0) is first
    assert provider.session_for_worker(1) is not first


def test_build_oracle_provider_selection():
    oracle = ScriptedOracle()

    shared = build_oracle_provider(oracle, ScriptedOracle, supports_concurrency=True)
    assert isinstance(shared, SharedOracleProvider)
    assert shared.session_for_worker(3) is oracle

    assert isinstance(build_oracle_provider(oracle, ScriptedOracle), PerWorkerOracleProvider)

    serialized = build_oracle_provider(oracle)
    assert isinstance(serialized, SerializedOracleProvider)
    session = serialized.session_for_worker(0)
    assert isinstance(session, SerializedOracle)
    assert session.oracle is oracle
    assert serialized.session_for_worker(1) is session


@pytest.mark.asyncio
async def test_serialized_oracle_never_overlaps_calls():
    oracle = OverlapTrackingOracle()
    session = SerializedOracleProvider(oracle).session_for_worker(0)
    requests = [ReviewRequest(objective="o", title=f"page {i}", numbered_content="0: x") for i in range(5)]

    reviews = await asyncio.gather(*(session.review_content(r) for r in requests))

    assert len(reviews) == 5
    assert oracle.peak == 1
    assert len(oracle.calls["review_content"]) == 5


@pytest.mark.asyncio
async def test_per_worker_provider_closes_its_sessions():
    created: list[ClosableOracle] = []

    def factory() -> ClosableOracle:
        created.append(ClosableOracle(fail_on_close=not created))
        return created[-1]

    provider = PerWorkerOracleProvider(factory)
    provider.session_for_worker(0)
    provider.session_for_worker(1)

    await provider.aclose()

    assert [o.closed for o in created] == [True, True]
    # A closed provider builds fresh sessions for the next run.
    fresh = provider.session_for_worker(0)
    assert len(created) == 3
    assert fresh is created[2]


@pytest.mark.asyncio
async def test_shared_providers_leave_caller_oracle_open():
    oracle = ClosableOracle()

    await SharedOracleProvider(oracle).aclose()
    await SerializedOracleProvider(oracle).aclose()

    assert not oracle.closed
