"""
Run execution: launches runs on RQ and drains them with a bounded worker pool.

    launch_run()  → create Run + RunItems, enqueue execute_run(run_id) on RQ
    execute_run() → recover stale items, then N threads loop claim_next → process_item
    process_item() → orchestrator.resolve under the retry policy, then one terminal
                     (or requeue) transition on the item

Pausing only stops claiming; an item already in flight finishes its current
provider call. Between retry attempts a worker that sees the run paused hands
its item back to the queue instead of calling again.
"""
import dataclasses
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, List

from skiptrace.config import SKIP_TRACE_CONCURRENCY, SKIP_TRACE_STALE_ITEM_SECONDS, RUN_JOB_TIMEOUT
from skiptrace.errors import (
    SkipTraceError, BudgetExceededError, AuthConfigurationError,
)
from skiptrace.pipeline import coordinator
from skiptrace.pipeline.coordinator import ClaimedItem
from skiptrace.pipeline.orchestrator import LookupOrchestrator, get_orchestrator
from skiptrace.pipeline.retry import RetryPolicy, RETRYABLE_ERRORS
from skiptrace.services.notifications import notify_run_complete, notify_configuration_error
from skiptrace.services.provider import active_provider_name

logger = logging.getLogger('pipeline.manager')


class _RunPaused(Exception):
    """Internal: the run was paused while an item waited to retry."""


# ── Lazy RQ queue (avoids import-time Redis connection) ───────────────────

_queue = None


def _get_queue():
    global _queue
    if _queue is None:
        from skiptrace.extensions import redis_client
        from rq import Queue
        _queue = Queue(connection=redis_client)
    return _queue


# ── Public API ────────────────────────────────────────────────────────────────

def launch_run(source_label: str, items: List[Dict[str, Any]], provider_name: str = None) -> dict:
    """Create a run and enqueue its execution as a background RQ job."""
    if provider_name is None:
        provider_name = active_provider_name()
    status = coordinator.create_run(source_label, items, provider_name)
    if status['queued']:
        enqueue_run(status['run_id'])
    return status


def enqueue_run(run_id: str):
    _get_queue().enqueue(execute_run, run_id, job_timeout=RUN_JOB_TIMEOUT)
    logger.info("Run %s enqueued", run_id)


# ── Runner (enqueued via RQ) ──────────────────────────────────────────────────

def execute_run(run_id: str, concurrency: int = None, orchestrator: LookupOrchestrator = None,
                policy: RetryPolicy = None, stale_after_seconds: int = SKIP_TRACE_STALE_ITEM_SECONDS) -> dict:
    """Drain every claimable item of a run with a bounded pool of worker threads.

    Safe to call again after a crash or a resume: stale in_flight items are
    requeued first, and terminal items are never claimed again.
    """
    status = coordinator.get_run(run_id)
    if status is None:
        logger.error("Run %s not found", run_id)
        return None

    coordinator.recover_stale_items(run_id, stale_after_seconds)
    orchestrator = orchestrator or get_orchestrator()
    policy = policy or RetryPolicy()
    workers = max(1, concurrency or SKIP_TRACE_CONCURRENCY)

    logger.info("Executing run %s with %d workers (queued=%d)", run_id, workers, status['queued'])
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=f'run-{run_id[:8]}') as pool:
        futures = [pool.submit(_worker_loop, run_id, orchestrator, policy) for _ in range(workers)]
        processed = sum(f.result() for f in futures)

    coordinator.finish_if_complete(run_id)
    status = coordinator.get_run(run_id)
    logger.info(
        "Run %s drained: processed=%d done=%d failed=%d queued=%d paused=%s",
        run_id, processed, status['done'], status['failed'], status['queued'], status['soft_paused'],
    )
    if status['finished_at'] and processed:
        report = coordinator.run_report(run_id, budget=orchestrator.budget)
        notify_run_complete({**status, 'cost_cents': report['cost_cents']})
    return status


def _worker_loop(run_id: str, orchestrator: LookupOrchestrator, policy: RetryPolicy) -> int:
    processed = 0
    while True:
        item = coordinator.claim_next(run_id)
        if item is None:
            return processed
        process_item(item, orchestrator, policy)
        processed += 1


def process_item(item: ClaimedItem, orchestrator: LookupOrchestrator, policy: RetryPolicy) -> str:
    """Resolve one claimed item and record its outcome. Returns the resulting item status."""
    first = True

    def _attempt():
        nonlocal first
        if not first:
            if coordinator.is_paused(item.run_id):
                raise _RunPaused()
            coordinator.bump_attempt(item)
        first = False
        return orchestrator.resolve(
            item.subject_id, item.address, item.person,
            run_id=item.run_id, run_item_id=item.id,
        )

    def _before_sleep(retry_state):
        exc = retry_state.outcome.exception()
        logger.warning(
            "Item %s attempt %d transient failure, backing off %.2fs: %s",
            item.id, item.attempt, retry_state.next_action.sleep, exc,
        )

    # attempts from earlier claims count against max_attempts; a claim always gets one
    remaining = max(1, policy.max_attempts - (item.attempt - 1))
    if remaining < policy.max_attempts:
        policy = dataclasses.replace(policy, max_attempts=remaining)

    try:
        result = policy.call(_attempt, before_sleep=_before_sleep)
    except _RunPaused:
        coordinator.requeue_item(item)
        logger.info("Item %s handed back: run %s paused", item.id, item.run_id)
        return coordinator.QUEUED
    except BudgetExceededError as e:
        coordinator.requeue_item(item, error=e.describe())
        coordinator.pause_run(item.run_id, reason=e.reason)
        logger.warning("Run %s soft-paused: %s", item.run_id, e)
        return coordinator.QUEUED
    except AuthConfigurationError as e:
        coordinator.fail_item(item, e.describe())
        coordinator.pause_run(item.run_id, reason=e.describe())
        logger.critical("Provider configuration error, run %s paused: %s", item.run_id, e)
        notify_configuration_error(item.run_id, str(e))
        return coordinator.FAILED
    except RETRYABLE_ERRORS as e:
        message = e.describe() if isinstance(e, SkipTraceError) else f'transient: {e}'
        coordinator.fail_item(item, message)
        logger.warning("Item %s failed after %d attempts: %s", item.id, item.attempt, message)
        return coordinator.FAILED
    except SkipTraceError as e:
        coordinator.fail_item(item, e.describe())
        logger.warning("Item %s failed: %s", item.id, e.describe())
        return coordinator.FAILED
    except Exception as e:
        logger.exception("Item %s crashed", item.id)
        coordinator.fail_item(item, f'internal: {e}')
        return coordinator.FAILED

    coordinator.complete_item(item, {
        'phones': result.phones,
        'emails': result.emails,
        'cached': result.cached,
    })
    return coordinator.DONE
