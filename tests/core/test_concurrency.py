"""
SkillForge - Concurrency Tests
==============================

Two writers racing on the same execution: one wins, the other gets a
retryable conflict and leaves no trace.
"""

import asyncio

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from skillforge.core.chain import ConcurrencyConflictError, ExecutionStateMachine
from skillforge.core.models import ChainExecutionStatus, LinkExecutionOutcome

SUCCESS = LinkExecutionOutcome.SUCCESS


class TestOptimisticConcurrency:
    async def test_stale_writer_loses(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        make_chain,
    ):
        chain, links = await make_chain({}, {}, {})
        async with session_factory() as db:
            started = await ExecutionStateMachine(db).start(chain.id)
        execution_id = started.id

        async with session_factory() as db_a, session_factory() as db_b:
            writer_a = ExecutionStateMachine(db_a)
            writer_b = ExecutionStateMachine(db_b)

            # Both hold version 1 in their sessions
            seen_by_a = await writer_a.get_execution(execution_id)
            seen_by_b = await writer_b.get_execution(execution_id)
            assert seen_by_a.version == seen_by_b.version == 1

            winner = await writer_a.record_link_outcome(execution_id, links[0].id, SUCCESS)
            assert winner.version == 2

            with pytest.raises(ConcurrencyConflictError) as exc_info:
                await writer_b.record_link_outcome(execution_id, links[0].id, SUCCESS)

        assert exc_info.value.retryable is True
        assert exc_info.value.execution_id == execution_id

        async with session_factory() as db:
            reader = ExecutionStateMachine(db)
            snapshot = await reader.get_execution(execution_id)
            attempts = await reader.list_attempts(execution_id)

        assert snapshot.version == 2
        assert snapshot.current_link_id == links[1].id
        assert len(attempts) == 1

    async def test_simultaneous_outcomes(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        make_chain,
    ):
        """Two workers report the same link at once; exactly one is applied."""
        chain, links = await make_chain({}, {})
        async with session_factory() as db:
            execution_id = (await ExecutionStateMachine(db).start(chain.id)).id

        async with session_factory() as db_a, session_factory() as db_b:
            writer_a = ExecutionStateMachine(db_a)
            writer_b = ExecutionStateMachine(db_b)
            seen = [
                await writer_a.get_execution(execution_id),
                await writer_b.get_execution(execution_id),
            ]
            assert all(snapshot.version == 1 for snapshot in seen)

            results = await asyncio.gather(
                writer_a.record_link_outcome(execution_id, links[0].id, SUCCESS),
                writer_b.record_link_outcome(execution_id, links[0].id, SUCCESS),
                return_exceptions=True,
            )

        conflicts = [result for result in results if isinstance(result, ConcurrencyConflictError)]
        applied = [result for result in results if not isinstance(result, Exception)]
        assert len(conflicts) == 1
        assert len(applied) == 1
        assert applied[0].version == 2

        async with session_factory() as db:
            attempts = await ExecutionStateMachine(db).list_attempts(execution_id)
        assert len(attempts) == 1

    async def test_loser_can_retry_after_rereading(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        make_chain,
    ):
        chain, links = await make_chain({}, {})
        async with session_factory() as db:
            execution_id = (await ExecutionStateMachine(db).start(chain.id)).id

        async with session_factory() as db_a, session_factory() as db_b:
            writer_b = ExecutionStateMachine(db_b)
            stale = await writer_b.get_execution(execution_id)
            assert stale.status == ChainExecutionStatus.RUNNING

            await ExecutionStateMachine(db_a).pause_execution(execution_id, reason="hold")

            with pytest.raises(ConcurrencyConflictError):
                await writer_b.record_link_outcome(execution_id, links[0].id, SUCCESS)

        async with session_factory() as db:
            fresh = ExecutionStateMachine(db)
            snapshot = await fresh.get_execution(execution_id)
            assert snapshot.status == ChainExecutionStatus.PAUSED

            snapshot = await fresh.resume_execution(execution_id, expected_version=snapshot.version)
            snapshot = await fresh.record_link_outcome(
                execution_id, links[0].id, SUCCESS, expected_version=snapshot.version
            )

        assert snapshot.current_link_id == links[1].id
        assert snapshot.version == 4

    async def test_executions_do_not_block_each_other(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        make_chain,
    ):
        chain, links = await make_chain({}, {})
        async with session_factory() as db:
            state_machine = ExecutionStateMachine(db)
            first = await state_machine.start(chain.id)
            second = await state_machine.start(chain.id)

        async with session_factory() as db_a, session_factory() as db_b:
            a = await ExecutionStateMachine(db_a).record_link_outcome(first.id, links[0].id, SUCCESS)
            b = await ExecutionStateMachine(db_b).record_link_outcome(second.id, links[0].id, SUCCESS)

        assert a.version == 2
        assert b.version == 2
