"""Tests for job payloads and the queue backends."""

from __future__ import annotations

import fakeredis
import fakeredis.aioredis
import pydantic
import pytest

from docflow.config import get_settings
from docflow.errors import ExternalServiceError
from docflow.jobs.factory import close_job_queue, get_job_queue
from docflow.jobs.memory import InMemoryJobQueue
from docflow.jobs.redis_queue import RedisJobQueue
from docflow.schemas import AgentExecutionJob, CoordinatorJob, QueueName, parse_job


def agent_job(step_id: str = "s1") -> AgentExecutionJob:
    return AgentExecutionJob(execution_id="e1", step_id=step_id, agent_id="a1", document_id="d1")


class TestPayloads:
    def test_agent_job_identity(self):
        job = agent_job()
        assert job.job_id == "exec-e1-step-s1"
        assert job.queue_name == QueueName.AGENT_EXECUTION

    def test_coordinator_job_identity(self):
        ok = CoordinatorJob(execution_id="e1", step_id="s1", succeeded=True, output_text="x")
        failed = CoordinatorJob(execution_id="e1", step_id="s1", succeeded=False, error="boom")
        assert ok.queue_name == QueueName.WORKFLOW_ORCHESTRATION
        assert ok.job_id != failed.job_id

    def test_parse_job_dispatches_on_kind(self):
        assert isinstance(parse_job(agent_job().model_dump_json()), AgentExecutionJob)
        raw = CoordinatorJob(execution_id="e1", step_id="s1", succeeded=False, error="boom").model_dump_json()
        parsed = parse_job(raw)
        assert isinstance(parsed, CoordinatorJob)
        assert parsed.error == "boom"

    @pytest.mark.parametrize(
        "raw",
        [
            '{"kind": "unknown", "execution_id": "e1"}',
            '{"kind": "agent_execution", "execution_id": "e1"}',
            "not json",
        ],
    )
    def test_parse_job_rejects_malformed_payloads(self, raw):
        with pytest.raises(pydantic.ValidationError):
            parse_job(raw)


class TestInMemoryJobQueue:
    async def test_fifo(self):
        queue = InMemoryJobQueue()
        await queue.enqueue(agent_job("s1"))
        await queue.enqueue(agent_job("s2"))

        first = await queue.dequeue(QueueName.AGENT_EXECUTION, timeout=0.01)
        second = await queue.dequeue(QueueName.AGENT_EXECUTION, timeout=0.01)

        assert first.payload.step_id == "s1"
        assert second.payload.step_id == "s2"
        assert await queue.dequeue(QueueName.AGENT_EXECUTION, timeout=0.01) is None

    async def test_queues_are_separate(self):
        queue = InMemoryJobQueue()
        await queue.enqueue(agent_job())
        assert await queue.dequeue(QueueName.WORKFLOW_ORCHESTRATION, timeout=0.01) is None

    async def test_cancel_only_removes_waiting_jobs(self):
        queue = InMemoryJobQueue()
        job_id = await queue.enqueue(agent_job("s1"))
        await queue.enqueue(agent_job("s2"))

        assert await queue.cancel(job_id) is True
        assert queue.pending_ids(QueueName.AGENT_EXECUTION) == ["exec-e1-step-s2"]

        taken = await queue.dequeue(QueueName.AGENT_EXECUTION, timeout=0.01)
        assert await queue.cancel(taken.job_id) is False
        await queue.ack(taken)
        assert await queue.cancel("unknown") is False


@pytest.fixture
def fake_server() -> fakeredis.FakeServer:
    return fakeredis.FakeServer()


@pytest.fixture
async def redis_queue(fake_server):
    client = fakeredis.aioredis.FakeRedis(server=fake_server, decode_responses=True)
    queue = RedisJobQueue(prefix="test", client=client)
    yield queue
    await queue.close()


class TestRedisJobQueue:
    async def test_fifo_and_ack(self, redis_queue):
        await redis_queue.enqueue(agent_job("s1"))
        await redis_queue.enqueue(agent_job("s2"))

        first = await redis_queue.dequeue(QueueName.AGENT_EXECUTION, timeout=0.1)
        second = await redis_queue.dequeue(QueueName.AGENT_EXECUTION, timeout=0.1)

        assert first.payload.step_id == "s1"
        assert second.payload.step_id == "s2"
        assert await redis_queue.dequeue(QueueName.AGENT_EXECUTION, timeout=0.1) is None

        await redis_queue.ack(first)
        await redis_queue.ack(second)
        client = redis_queue._client
        assert await client.llen("test:processing:agent-execution") == 0
        assert await client.exists("test:job:exec-e1-step-s1") == 0

    async def test_coordinator_jobs_use_their_own_queue(self, redis_queue):
        await redis_queue.enqueue(CoordinatorJob(execution_id="e1", step_id="s1", succeeded=True))

        assert await redis_queue.dequeue(QueueName.AGENT_EXECUTION, timeout=0.1) is None
        taken = await redis_queue.dequeue(QueueName.WORKFLOW_ORCHESTRATION, timeout=0.1)
        assert isinstance(taken.payload, CoordinatorJob)

    async def test_cancel_waiting_job(self, redis_queue):
        job_id = await redis_queue.enqueue(agent_job("s1"))
        await redis_queue.enqueue(agent_job("s2"))

        assert await redis_queue.cancel(job_id) is True
        assert await redis_queue._client.exists(f"test:job:{job_id}") == 0

        taken = await redis_queue.dequeue(QueueName.AGENT_EXECUTION, timeout=0.1)
        assert taken.payload.step_id == "s2"
        assert await redis_queue.cancel(taken.job_id) is False
        assert await redis_queue.cancel("unknown") is False

    async def test_job_whose_payload_vanished_is_dropped(self, redis_queue):
        # A cancel that removed the payload while the id was being moved
        job_id = await redis_queue.enqueue(agent_job("s1"))
        await redis_queue._client.delete(f"test:job:{job_id}")

        assert await redis_queue.dequeue(QueueName.AGENT_EXECUTION, timeout=0.1) is None
        assert await redis_queue._client.llen("test:processing:agent-execution") == 0

    async def test_requeue_unacked_restores_order(self, redis_queue):
        await redis_queue.enqueue(agent_job("s1"))
        await redis_queue.enqueue(agent_job("s2"))
        await redis_queue.dequeue(QueueName.AGENT_EXECUTION, timeout=0.1)
        await redis_queue.dequeue(QueueName.AGENT_EXECUTION, timeout=0.1)

        assert await redis_queue.requeue_unacked(QueueName.AGENT_EXECUTION) == 2

        first = await redis_queue.dequeue(QueueName.AGENT_EXECUTION, timeout=0.1)
        second = await redis_queue.dequeue(QueueName.AGENT_EXECUTION, timeout=0.1)
        assert [first.payload.step_id, second.payload.step_id] == ["s1", "s2"]
        assert await redis_queue.requeue_unacked(QueueName.WORKFLOW_ORCHESTRATION) == 0

    async def test_broker_errors_are_external_service_errors(self, redis_queue, fake_server):
        fake_server.connected = False

        with pytest.raises(ExternalServiceError):
            await redis_queue.enqueue(agent_job())
        with pytest.raises(ExternalServiceError):
            await redis_queue.dequeue(QueueName.AGENT_EXECUTION, timeout=0.1)
        with pytest.raises(ExternalServiceError):
            await redis_queue.cancel("exec-e1-step-s1")


class TestJobQueueFactory:
    @pytest.fixture(autouse=True)
    async def fresh_singleton(self):
        await close_job_queue()
        get_settings.cache_clear()
        yield
        await close_job_queue()
        get_settings.cache_clear()

    async def test_memory_backend(self, monkeypatch):
        monkeypatch.setenv("QUEUE_BACKEND", "memory")
        get_settings.cache_clear()

        queue = get_job_queue()

        assert isinstance(queue, InMemoryJobQueue)
        assert get_job_queue() is queue

    async def test_redis_backend_by_default(self, monkeypatch):
        monkeypatch.delenv("QUEUE_BACKEND", raising=False)
        get_settings.cache_clear()

        assert isinstance(get_job_queue(), RedisJobQueue)
