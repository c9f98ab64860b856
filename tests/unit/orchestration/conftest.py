"""Shared doubles for orchestration tests.

``FakeDurableClient`` is an in-memory ``IDurableExecutionClient``: runs
are plain ``RunDescription`` records keyed by identity, and every call
is recorded for assertions.
"""

from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional, Sequence

import pytest

from modules.orders.orchestration.interfaces import (
    Checkpoint,
    HistoryEvent,
    IDurableExecutionClient,
    IRunHandle,
    RunAlreadyStartedError,
    RunDescription,
    RunNotFoundError,
    RunStatus,
)


class FakeRunHandle(IRunHandle):
    def __init__(self, client: FakeDurableClient, identity: str) -> None:
        self._client = client
        self._identity = identity

    async def signal(self, name: str, payload: Any) -> None:
        await self._client.maybe_fail("signal")
        if self._identity not in self._client.runs:
            raise RunNotFoundError(self._identity)
        self._client.signals.append((self._identity, name, payload))

    async def describe(self) -> RunDescription:
        await self._client.maybe_fail("describe")
        run = self._client.runs.get(self._identity)
        if run is None:
            raise RunNotFoundError(self._identity)
        return run


class FakeDurableClient(IDurableExecutionClient):
    def __init__(self) -> None:
        self.runs: Dict[str, RunDescription] = {}
        self.started: List[tuple] = []
        self.signals: List[tuple] = []
        self.resets: List[tuple] = []
        self.histories: Dict[str, List[HistoryEvent]] = {}
        self.failures: Dict[str, BaseException] = {}
        self.hang: set = set()
        self.race_on_start = False
        self._counter = 0

    async def maybe_fail(self, operation: str) -> None:
        if operation in self.hang:
            await asyncio.sleep(60)
        if operation in self.failures:
            raise self.failures[operation]

    def _next_run_id(self) -> str:
        self._counter += 1
        return f"run-{self._counter}"

    async def start_run(self, identity: str, input: Any) -> Optional[str]:
        await self.maybe_fail("start")
        if self.race_on_start:
            raise RunAlreadyStartedError(identity)
        run = self.runs.get(identity)
        if run is not None and run.is_running:
            raise RunAlreadyStartedError(identity)
        run_id = self._next_run_id()
        self.runs[identity] = RunDescription(run_id, RunStatus.RUNNING)
        self.started.append((identity, input))
        return run_id

    def get_run_handle(self, identity: str) -> IRunHandle:
        return FakeRunHandle(self, identity)

    async def reset_run(
        self,
        identity: str,
        run_instance_id: str,
        checkpoint: Checkpoint,
        excluded_replay_categories: Sequence[str],
    ) -> Optional[str]:
        await self.maybe_fail("reset")
        run_id = self._next_run_id()
        self.resets.append(
            (identity, run_instance_id, checkpoint, list(excluded_replay_categories))
        )
        self.runs[identity] = RunDescription(run_id, RunStatus.RUNNING)
        return run_id

    async def fetch_history(self, identity: str) -> List[HistoryEvent]:
        await self.maybe_fail("history")
        if identity not in self.runs:
            raise RunNotFoundError(identity)
        return list(self.histories.get(identity, []))


@pytest.fixture()
def client():
    return FakeDurableClient()
