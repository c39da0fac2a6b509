"""Tests for skiptrace.pipeline.coordinator: run/item state, atomic claims and counters."""
import threading

import pytest
from freezegun import freeze_time
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from skiptrace.config import ITEM_STATUSES
from skiptrace.errors import InvalidTransitionError
from skiptrace.models.run import Run
from skiptrace.models.run_item import RunItem
from skiptrace.pipeline import coordinator
from skiptrace.services import ledger, activity_log


def _assert_counters_consistent(run_id):
    run = coordinator.get_run(run_id)
    assert run['queued'] + run['in_flight'] + run['done'] + run['failed'] == run['total']
    items = coordinator.list_items(run_id)
    for status in ITEM_STATUSES:
        assert run[status] == sum(1 for i in items if i['status'] == status)
    return run


@pytest.fixture
def new_run(make_items):
    def _make(n=3, extra=None, label='test batch'):
        items = make_items(n) + list(extra or [])
        return coordinator.create_run(label, items, 'mock')
    return _make


class TestCreateRun:

    def test_counters_start_queued(self, new_run):
        run = new_run(3)
        assert run['total'] == 3
        assert run['queued'] == 3
        assert run['in_flight'] == run['done'] == run['failed'] == 0
        assert run['finished_at'] is None
        assert run['soft_paused'] is False

    def test_items_carry_normalized_identity(self, new_run):
        run = new_run(1)
        item = coordinator.list_items(run['run_id'])[0]
        assert item['normalized_address'] == '101 OAK AVE AUSTIN TX 78701'
        assert item['normalized_person'] == 'OWNER NUMBER1'
        assert len(item['idempotency_key']) == 64
        assert item['attempt'] == 0
        assert item['subject_id']

    def test_explicit_subject_id_kept(self, make_items):
        item = dict(make_items(1)[0], subject_id=42)
        run = coordinator.create_run('x', [item], 'mock')
        assert coordinator.list_items(run['run_id'])[0]['subject_id'] == '42'

    def test_duplicate_subjects_share_subject_id(self, make_items):
        items = make_items(1) * 2
        run = coordinator.create_run('dupes', items, 'mock')
        a, b = coordinator.list_items(run['run_id'])
        assert a['subject_id'] == b['subject_id']
        assert a['idempotency_key'] == b['idempotency_key']

    def test_invalid_items_fail_at_creation(self, new_run):
        run = new_run(2, extra=[{'address': {'city': 'Austin'}, 'person': {'last': 'X'}}])
        assert run['failed'] == 1
        assert run['queued'] == 2
        failed = coordinator.list_items(run['run_id'], status='failed')[0]
        assert failed['last_error'].startswith('validation:')
        _assert_counters_consistent(run['run_id'])

    def test_all_invalid_run_finishes_immediately(self):
        run = coordinator.create_run('bad', [{'address': None, 'person': None}], 'mock')
        assert run['failed'] == 1
        assert run['finished_at'] is not None


class TestClaim:

    def test_claim_moves_item_in_flight(self, new_run):
        run = new_run(2)
        item = coordinator.claim_next(run['run_id'])
        assert item.attempt == 1
        assert item.address['street'] == '101 Oak Avenue'
        assert item.person['last'] == 'Number1'
        status = _assert_counters_consistent(run['run_id'])
        assert status['queued'] == 1
        assert status['in_flight'] == 1

    def test_claims_in_order_until_empty(self, new_run):
        run = new_run(2)
        first = coordinator.claim_next(run['run_id'])
        second = coordinator.claim_next(run['run_id'])
        assert first.id < second.id
        assert coordinator.claim_next(run['run_id']) is None

    def test_paused_run_is_not_claimable(self, new_run):
        run = new_run(2)
        coordinator.pause_run(run['run_id'])
        assert coordinator.claim_next(run['run_id']) is None
        assert coordinator.get_run(run['run_id'])['queued'] == 2

    def test_unknown_run(self):
        assert coordinator.claim_next('missing') is None

    def test_concurrent_claims_never_share_an_item(self, new_run):
        run = new_run(30)
        claimed, errors = [], []
        lock = threading.Lock()
        barrier = threading.Barrier(6)

        def _worker():
            try:
                barrier.wait()
                while True:
                    item = coordinator.claim_next(run['run_id'])
                    if item is None:
                        return
                    with lock:
                        claimed.append(item.id)
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=_worker) for _ in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert len(claimed) == 30
        assert len(set(claimed)) == 30
        status = _assert_counters_consistent(run['run_id'])
        assert status['in_flight'] == 30


class TestTransitions:

    def test_complete_and_fail(self, new_run):
        run = new_run(2)
        a = coordinator.claim_next(run['run_id'])
        b = coordinator.claim_next(run['run_id'])
        assert coordinator.complete_item(a, {'phones': [], 'emails': [], 'cached': False})
        assert coordinator.fail_item(b, 'not_found: provider has no record for subject')
        status = _assert_counters_consistent(run['run_id'])
        assert status['done'] == 1
        assert status['failed'] == 1
        assert coordinator.get_item(a.id)['result'] == {'phones': [], 'emails': [], 'cached': False}
        assert coordinator.get_item(b.id)['last_error'].startswith('not_found:')

    def test_terminal_transition_only_from_in_flight(self, new_run):
        run = new_run(1)
        item = coordinator.claim_next(run['run_id'])
        assert coordinator.complete_item(item, {})
        assert not coordinator.complete_item(item, {})
        assert not coordinator.fail_item(item, 'late')
        status = _assert_counters_consistent(run['run_id'])
        assert status['done'] == 1

    def test_finished_at_stamped_once(self, new_run):
        run = new_run(2)
        a = coordinator.claim_next(run['run_id'])
        b = coordinator.claim_next(run['run_id'])
        coordinator.complete_item(a, {})
        assert coordinator.get_run(run['run_id'])['finished_at'] is None
        coordinator.complete_item(b, {})
        finished = coordinator.get_run(run['run_id'])['finished_at']
        assert finished is not None
        assert coordinator.finish_if_complete(run['run_id']) is False
        assert coordinator.get_run(run['run_id'])['finished_at'] == finished

    def test_requeue_keeps_attempt(self, new_run):
        run = new_run(1)
        item = coordinator.claim_next(run['run_id'])
        coordinator.bump_attempt(item)
        assert item.attempt == 2
        assert coordinator.requeue_item(item, error='budget_exceeded: daily_cap_exceeded')
        row = coordinator.get_item(item.id)
        assert row['status'] == 'queued'
        assert row['attempt'] == 2
        again = coordinator.claim_next(run['run_id'])
        assert again.attempt == 3
        _assert_counters_consistent(run['run_id'])

    def test_counter_sum_enforced_by_database(self, new_run, db_session):
        run = new_run(1)
        with pytest.raises(IntegrityError):
            db_session.execute(update(Run).where(Run.run_id == run['run_id']).values(done=Run.done + 1))
            db_session.commit()
        db_session.rollback()

    def test_item_status_enforced_by_database(self, new_run, db_session):
        run = new_run(1)
        with pytest.raises(IntegrityError):
            db_session.execute(update(RunItem).where(RunItem.run_id == run['run_id']).values(status='lost'))
            db_session.commit()
        db_session.rollback()


class TestOperatorControls:

    def test_pause_and_resume_are_idempotent(self, new_run):
        run = new_run(1)
        assert coordinator.pause_run(run['run_id'], reason='daily_cap_exceeded')['reason'] == 'daily_cap_exceeded'
        assert coordinator.pause_run(run['run_id'])['soft_paused'] is True
        assert coordinator.get_run(run['run_id'])['reason'] == 'daily_cap_exceeded'
        resumed = coordinator.resume_run(run['run_id'])
        assert resumed['soft_paused'] is False
        assert resumed['reason'] is None
        assert coordinator.resume_run(run['run_id'])['soft_paused'] is False

    def test_pause_unknown_run(self):
        assert coordinator.pause_run('missing') is None
        assert coordinator.resume_run('missing') is None

    def test_in_flight_item_finishes_after_pause(self, new_run):
        run = new_run(2)
        item = coordinator.claim_next(run['run_id'])
        coordinator.pause_run(run['run_id'])
        assert coordinator.complete_item(item, {})
        status = _assert_counters_consistent(run['run_id'])
        assert status['done'] == 1
        assert status['queued'] == 1

    def test_retry_failed_item(self, new_run):
        run = new_run(1)
        item = coordinator.claim_next(run['run_id'])
        coordinator.fail_item(item, 'transient: HTTP 503')
        assert coordinator.get_run(run['run_id'])['finished_at'] is not None

        row = coordinator.retry_failed_item(item.id)
        assert row['status'] == 'queued'
        assert row['attempt'] == 1
        status = _assert_counters_consistent(run['run_id'])
        assert status['finished_at'] is None
        assert coordinator.claim_next(run['run_id']).attempt == 2

    def test_retry_rejects_non_failed_item(self, new_run):
        run = new_run(1)
        item = coordinator.claim_next(run['run_id'])
        coordinator.complete_item(item, {})
        with pytest.raises(InvalidTransitionError):
            coordinator.retry_failed_item(item.id)
        assert coordinator.get_run(run['run_id'])['done'] == 1

    def test_retry_missing_item(self):
        assert coordinator.retry_failed_item(99999) is None

    def test_retry_failed_items_by_category(self, new_run):
        run = new_run(3)
        items = [coordinator.claim_next(run['run_id']) for _ in range(3)]
        coordinator.fail_item(items[0], 'transient: HTTP 503')
        coordinator.fail_item(items[1], 'not_found: provider has no record for subject')
        coordinator.fail_item(items[2], 'transient: timeout after 15s')

        assert coordinator.retry_failed_items(run['run_id'], error_category_filter='transient') == 2
        status = _assert_counters_consistent(run['run_id'])
        assert status['queued'] == 2
        assert status['failed'] == 1
        assert coordinator.retry_failed_items(run['run_id']) == 1

    @pytest.mark.parametrize('pattern', ['%', 'tr%', '_ransient', 'transient:%'])
    def test_category_filter_is_matched_literally(self, new_run, pattern):
        run = new_run(2)
        items = [coordinator.claim_next(run['run_id']) for _ in range(2)]
        coordinator.fail_item(items[0], 'transient: HTTP 503')
        coordinator.fail_item(items[1], 'not_found: provider has no record for subject')

        assert coordinator.retry_failed_items(run['run_id'], error_category_filter=pattern) == 0
        assert _assert_counters_consistent(run['run_id'])['failed'] == 2

    def test_recover_stale_items(self, new_run):
        run = new_run(2)
        with freeze_time('2026-04-01 10:00:00'):
            stale = coordinator.claim_next(run['run_id'])
        with freeze_time('2026-04-01 10:20:00'):
            fresh = coordinator.claim_next(run['run_id'])
            assert coordinator.recover_stale_items(run['run_id'], older_than_seconds=900) == 1
        assert coordinator.get_item(stale.id)['status'] == 'queued'
        assert coordinator.get_item(fresh.id)['status'] == 'in_flight'
        _assert_counters_consistent(run['run_id'])


class TestReport:

    def test_report_aggregates(self, new_run):
        run = new_run(3)
        run_id = run['run_id']
        a, b, c = (coordinator.claim_next(run_id) for _ in range(3))

        ledger.record('mock', run_id=run_id, subject_id=a.subject_id, cost_cents=12, status_code=200)
        activity_log.log_activity('mock', 'provider_ok', run_id=run_id, cost_cents=12)
        coordinator.complete_item(a, {'phones': [{'number': '3127770100'}], 'emails': [], 'cached': False})
        activity_log.log_activity('mock', 'cache_hit', run_id=run_id, cached=True)
        coordinator.complete_item(b, {'phones': [{'number': '3127770100'}], 'emails': [{'address': 'a@b.co'}],
                                      'cached': True})
        ledger.record('mock', run_id=run_id, subject_id=c.subject_id, cost_cents=0, status_code=404,
                      error_text='not_found: none')
        coordinator.fail_item(c, 'not_found: provider has no record for subject')

        report = coordinator.run_report(run_id)
        assert report['totals']['done'] == 2
        assert report['totals']['failed'] == 1
        assert report['totals']['provider_calls'] == 2
        assert report['totals']['billable_calls'] == 1
        assert report['totals']['cache_hits'] == 1
        assert report['totals']['attempts'] == 3
        assert report['cost_cents'] == 12
        assert report['hit_rate'] == {'phone_pct': 100.0, 'email_pct': 50.0}
        assert report['cache_hit_ratio'] == 0.5
        assert report['activity'] == {'provider_ok': 1, 'cache_hit': 1}
        assert report['errors']['not_found']['count'] == 1
        assert report['errors']['not_found']['item_ids'] == [c.id]
        assert report['run']['finished_at'] is not None

    def test_report_for_unknown_run(self):
        assert coordinator.run_report('missing') is None
