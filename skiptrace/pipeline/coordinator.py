"""
Run Coordinator: owns Run and RunItem state.

Item lifecycle:
    queued → in_flight → done | failed
    in_flight → queued      (budget requeue, pause between attempts, stale recovery)
    failed → queued         (explicit operator retry only; attempt is preserved)

Every transition is a conditional UPDATE on the item's current status plus a
single UPDATE that moves one unit between the run's counter columns, both in
one transaction. Two workers can never claim the same item, and the counters
always sum to total.
"""
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, List, Optional
import uuid

from sqlalchemy import select, update, func

from skiptrace.database import get_session, dialect_name
from skiptrace.errors import ValidationError, InvalidTransitionError, error_category
from skiptrace.models.run import Run
from skiptrace.models.run_item import RunItem
from skiptrace.services import ledger, activity_log
from skiptrace.services.budget import BudgetGuardrail
from skiptrace.services.normalization import normalize_address, normalize_person, idempotency_key
from skiptrace.services.records import find_or_create_subject
from skiptrace.timeutil import utcnow, isoformat

logger = logging.getLogger('pipeline.coordinator')

QUEUED = 'queued'
IN_FLIGHT = 'in_flight'
DONE = 'done'
FAILED = 'failed'

_COUNTERS = {
    QUEUED: Run.queued,
    IN_FLIGHT: Run.in_flight,
    DONE: Run.done,
    FAILED: Run.failed,
}

MAX_CLAIM_TRIES = 20


@dataclass
class ClaimedItem:
    """A run item a worker now exclusively holds in_flight."""
    id: int
    run_id: str
    subject_id: Optional[str]
    attempt: int
    idempotency_key: Optional[str]
    address: Any
    person: Any


# ── Helpers ──────────────────────────────────────────────────────────────────

def _shift_counters(session, run_id, from_status, to_status, n=1):
    src, dst = _COUNTERS[from_status], _COUNTERS[to_status]
    session.execute(
        update(Run).where(Run.run_id == run_id).values({src: src - n, dst: dst + n})
    )


def _move(session, item_id, run_id, from_status, to_status, **values) -> bool:
    """Conditionally move one item between states. False when it was not in from_status."""
    result = session.execute(
        update(RunItem)
        .where(RunItem.id == item_id, RunItem.status == from_status)
        .values(status=to_status, updated_at=utcnow(), **values)
    )
    if result.rowcount != 1:
        return False
    _shift_counters(session, run_id, from_status, to_status)
    return True


def _finish_if_complete(session, run_id) -> bool:
    """Stamp finished_at once, when done + failed == total. Returns True for the stamping caller."""
    result = session.execute(
        update(Run)
        .where(
            Run.run_id == run_id,
            Run.finished_at.is_(None),
            Run.done + Run.failed == Run.total,
        )
        .values(finished_at=utcnow())
    )
    if result.rowcount == 1:
        logger.info("Run %s finished", run_id)
        return True
    return False


def _write(fn):
    """Run fn(session) in its own transaction."""
    session = get_session()
    try:
        out = fn(session)
        session.commit()
        return out
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


# ── Run creation ─────────────────────────────────────────────────────────────

def create_run(source_label: str, items: List[Dict[str, Any]], provider_name: str) -> dict:
    """Enumerate a batch into a Run with one RunItem per input row.

    Rows without a subject_id get one from find_or_create_subject. Rows that
    fail normalization are created directly as failed with a validation error.
    """
    run_id = str(uuid.uuid4())
    prepared = []
    for raw in items:
        address_raw = raw.get('address')
        person_raw = raw.get('person')
        subject_id = raw.get('subject_id')
        row = {
            'subject_id': str(subject_id) if subject_id is not None else None,
            'input_json': {'address': address_raw, 'person': person_raw},
            'status': QUEUED,
        }
        try:
            address = normalize_address(address_raw)
            person = normalize_person(person_raw)
        except ValidationError as e:
            row.update(status=FAILED, last_error=e.describe())
            prepared.append(row)
            continue
        if row['subject_id'] is None:
            row['subject_id'] = find_or_create_subject(address, person).subject_id
        row.update(
            normalized_address=address.canonical,
            normalized_person=person.canonical,
            idempotency_key=idempotency_key(provider_name, address, person),
        )
        prepared.append(row)

    failed = sum(1 for r in prepared if r['status'] == FAILED)

    def _insert(session):
        now = utcnow()
        session.add(Run(
            run_id=run_id,
            source_label=source_label or '',
            total=len(prepared),
            queued=len(prepared) - failed,
            in_flight=0,
            done=0,
            failed=failed,
            started_at=now,
            soft_paused=False,
        ))
        session.flush()
        session.add_all(RunItem(run_id=run_id, attempt=0, created_at=now, updated_at=now, **r) for r in prepared)
        session.flush()
        _finish_if_complete(session, run_id)

    _write(_insert)
    logger.info("Created run %s (%s): %d items, %d invalid", run_id, source_label, len(prepared), failed)
    return get_run(run_id)


# ── Reads ────────────────────────────────────────────────────────────────────

def get_run(run_id: str) -> Optional[dict]:
    session = get_session()
    try:
        run = session.get(Run, run_id)
        return run.to_dict() if run else None
    finally:
        session.close()


def get_item(item_id: int) -> Optional[dict]:
    session = get_session()
    try:
        item = session.get(RunItem, item_id)
        return item.to_dict() if item else None
    finally:
        session.close()


def list_items(run_id: str, status: str = None) -> List[dict]:
    session = get_session()
    try:
        stmt = select(RunItem).where(RunItem.run_id == run_id).order_by(RunItem.id)
        if status:
            stmt = stmt.where(RunItem.status == status)
        return [i.to_dict() for i in session.execute(stmt).scalars().all()]
    finally:
        session.close()


def is_paused(run_id: str) -> bool:
    session = get_session()
    try:
        return bool(session.execute(select(Run.soft_paused).where(Run.run_id == run_id)).scalar_one_or_none())
    finally:
        session.close()


# ── Claiming ─────────────────────────────────────────────────────────────────

def claim_next(run_id: str) -> Optional[ClaimedItem]:
    """Atomically take one queued item of an unpaused run and mark it in_flight.

    Increments attempt. Returns None when nothing is claimable (run paused,
    missing, or no queued items left).
    """
    session = get_session()
    try:
        use_skip_locked = dialect_name(session) == 'postgresql'
        for _ in range(MAX_CLAIM_TRIES):
            paused = session.execute(select(Run.soft_paused).where(Run.run_id == run_id)).scalar_one_or_none()
            if paused is None or paused:
                return None

            stmt = (
                select(RunItem.id)
                .where(RunItem.run_id == run_id, RunItem.status == QUEUED)
                .order_by(RunItem.id)
                .limit(1)
            )
            if use_skip_locked:
                stmt = stmt.with_for_update(skip_locked=True)
            candidate = session.execute(stmt).scalar_one_or_none()
            if candidate is None:
                session.rollback()
                return None

            unpaused = select(Run.run_id).where(Run.run_id == run_id, Run.soft_paused.is_(False))
            claimed = session.execute(
                update(RunItem)
                .where(
                    RunItem.id == candidate,
                    RunItem.status == QUEUED,
                    RunItem.run_id.in_(unpaused),
                )
                .values(status=IN_FLIGHT, attempt=RunItem.attempt + 1, updated_at=utcnow())
            )
            if claimed.rowcount != 1:
                session.rollback()
                continue

            _shift_counters(session, run_id, QUEUED, IN_FLIGHT)
            session.commit()

            item = session.get(RunItem, candidate)
            inputs = item.input_json or {}
            return ClaimedItem(
                id=item.id,
                run_id=item.run_id,
                subject_id=item.subject_id,
                attempt=item.attempt,
                idempotency_key=item.idempotency_key,
                address=inputs.get('address'),
                person=inputs.get('person'),
            )
        logger.warning("Run %s: gave up claiming after %d contended tries", run_id, MAX_CLAIM_TRIES)
        return None
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


# ── Worker transitions ───────────────────────────────────────────────────────

def complete_item(item: ClaimedItem, result: dict) -> bool:
    def _do(session):
        moved = _move(session, item.id, item.run_id, IN_FLIGHT, DONE, result_json=result, last_error=None)
        if moved:
            _finish_if_complete(session, item.run_id)
        return moved
    moved = _write(_do)
    if not moved:
        logger.warning("Item %s was no longer in_flight when completing", item.id)
    return moved


def fail_item(item: ClaimedItem, error: str) -> bool:
    def _do(session):
        moved = _move(session, item.id, item.run_id, IN_FLIGHT, FAILED, last_error=error)
        if moved:
            _finish_if_complete(session, item.run_id)
        return moved
    moved = _write(_do)
    if not moved:
        logger.warning("Item %s was no longer in_flight when failing", item.id)
    return moved


def requeue_item(item: ClaimedItem, error: str = None) -> bool:
    """Hand an in_flight item back to the queue without a terminal outcome."""
    values = {'last_error': error} if error else {}
    return _write(lambda session: _move(session, item.id, item.run_id, IN_FLIGHT, QUEUED, **values))


def bump_attempt(item: ClaimedItem) -> int:
    """Count one more execution attempt within the current claim."""
    def _do(session):
        session.execute(
            update(RunItem)
            .where(RunItem.id == item.id, RunItem.status == IN_FLIGHT)
            .values(attempt=RunItem.attempt + 1, updated_at=utcnow())
        )
        return session.execute(select(RunItem.attempt).where(RunItem.id == item.id)).scalar_one()
    item.attempt = _write(_do)
    return item.attempt


# ── Operator controls ────────────────────────────────────────────────────────

def pause_run(run_id: str, reason: str = None) -> Optional[dict]:
    """Stop new claims for a run. Idempotent; in-flight items finish normally."""
    def _do(session):
        values = {'soft_paused': True}
        if reason:
            values['reason'] = reason
        return session.execute(update(Run).where(Run.run_id == run_id).values(**values)).rowcount
    if not _write(_do):
        return None
    logger.info("Run %s paused (%s)", run_id, reason or 'operator')
    return get_run(run_id)


def resume_run(run_id: str) -> Optional[dict]:
    """Allow claiming again and clear the pause reason. Idempotent."""
    def _do(session):
        return session.execute(
            update(Run).where(Run.run_id == run_id).values(soft_paused=False, reason=None)
        ).rowcount
    if not _write(_do):
        return None
    logger.info("Run %s resumed", run_id)
    return get_run(run_id)


def retry_failed_item(item_id: int) -> Optional[dict]:
    """Move one failed item back to queued, keeping its attempt count.

    Returns None if the item does not exist; raises InvalidTransitionError if it is not failed.
    """
    def _do(session):
        item = session.get(RunItem, item_id)
        if item is None:
            return None
        run_id = item.run_id
        if not _move(session, item_id, run_id, FAILED, QUEUED):
            raise InvalidTransitionError(f'item {item_id} is {item.status}, only failed items can be retried')
        session.execute(update(Run).where(Run.run_id == run_id).values(finished_at=None))
        return run_id
    run_id = _write(_do)
    if run_id is None:
        return None
    logger.info("Item %s requeued for retry (run %s)", item_id, run_id)
    return get_item(item_id)


def retry_failed_items(run_id: str, error_category_filter: str = None) -> int:
    """Move every failed item of a run (optionally only one error category) back to queued."""
    def _do(session):
        stmt = update(RunItem).where(RunItem.run_id == run_id, RunItem.status == FAILED)
        if error_category_filter:
            stmt = stmt.where(RunItem.last_error.startswith(f'{error_category_filter}:', autoescape=True))
        moved = session.execute(stmt.values(status=QUEUED, updated_at=utcnow())).rowcount
        if moved:
            _shift_counters(session, run_id, FAILED, QUEUED, n=moved)
            session.execute(update(Run).where(Run.run_id == run_id).values(finished_at=None))
        return moved
    moved = _write(_do)
    logger.info("Run %s: %d failed items requeued (filter=%s)", run_id, moved, error_category_filter)
    return moved


def recover_stale_items(run_id: str, older_than_seconds: int) -> int:
    """Requeue items stuck in_flight longer than the threshold (left behind by a dead worker)."""
    cutoff = utcnow() - timedelta(seconds=older_than_seconds)

    def _do(session):
        moved = session.execute(
            update(RunItem)
            .where(RunItem.run_id == run_id, RunItem.status == IN_FLIGHT, RunItem.updated_at < cutoff)
            .values(status=QUEUED, updated_at=utcnow())
        ).rowcount
        if moved:
            _shift_counters(session, run_id, IN_FLIGHT, QUEUED, n=moved)
        return moved
    moved = _write(_do)
    if moved:
        logger.warning("Run %s: recovered %d stale in_flight items", run_id, moved)
    return moved


def finish_if_complete(run_id: str) -> bool:
    return _write(lambda session: _finish_if_complete(session, run_id))


# ── Reporting ────────────────────────────────────────────────────────────────

def run_report(run_id: str, budget: BudgetGuardrail = None) -> Optional[dict]:
    """Aggregate outcome of a run: totals, cost, hit rates, cache ratio, errors by category."""
    status = get_run(run_id)
    if status is None:
        return None

    session = get_session()
    try:
        done_results = session.execute(
            select(RunItem.result_json).where(RunItem.run_id == run_id, RunItem.status == DONE)
        ).scalars().all()
        failed_rows = session.execute(
            select(RunItem.id, RunItem.last_error)
            .where(RunItem.run_id == run_id, RunItem.status == FAILED)
            .order_by(RunItem.id)
        ).all()
        attempts = session.execute(
            select(func.coalesce(func.sum(RunItem.attempt), 0)).where(RunItem.run_id == run_id)
        ).scalar_one()
    finally:
        session.close()

    calls = ledger.run_totals(run_id)
    done = status['done']
    with_phone = sum(1 for r in done_results if r and r.get('phones'))
    with_email = sum(1 for r in done_results if r and r.get('emails'))
    cache_hits = max(0, done - calls['billable_calls'])

    errors: Dict[str, dict] = {}
    for item_id, last_error in failed_rows:
        bucket = errors.setdefault(error_category(last_error), {'count': 0, 'item_ids': [], 'example': last_error})
        bucket['count'] += 1
        if len(bucket['item_ids']) < 10:
            bucket['item_ids'].append(item_id)

    budget = budget or BudgetGuardrail()
    snapshot = budget.snapshot()

    return {
        'run': status,
        'totals': {
            'total': status['total'],
            'queued': status['queued'],
            'in_flight': status['in_flight'],
            'done': done,
            'failed': status['failed'],
            'attempts': int(attempts),
            'provider_calls': calls['provider_calls'],
            'billable_calls': calls['billable_calls'],
            'cache_hits': cache_hits,
        },
        'cost_cents': calls['cost_cents'],
        'hit_rate': {
            'phone_pct': round(100.0 * with_phone / done, 1) if done else 0.0,
            'email_pct': round(100.0 * with_email / done, 1) if done else 0.0,
        },
        'cache_hit_ratio': round(cache_hits / done, 3) if done else 0.0,
        'budget': {'cap_cents': snapshot['cap_cents'], 'spent_cents': snapshot['spent_cents']},
        'activity': activity_log.count_outcomes(run_id=run_id),
        'errors': errors,
        'generated_at': isoformat(utcnow()),
    }
