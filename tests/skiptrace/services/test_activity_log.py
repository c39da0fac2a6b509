"""Tests for skiptrace.services.activity_log."""
import pytest
from sqlalchemy import select

from skiptrace.models.lookup_activity import LookupActivity
from skiptrace.services.activity_log import log_activity, count_outcomes


def test_cache_hit_never_carries_cost(db_session):
    log_activity('mock', 'cache_hit', subject_id='s1', cached=True, cost_cents=12)
    row = db_session.execute(select(LookupActivity)).scalar_one()
    assert row.cached is True
    assert row.cost_cents == 0


def test_unknown_outcome_rejected():
    with pytest.raises(ValueError):
        log_activity('mock', 'exploded')


def test_detail_truncated(db_session):
    log_activity('mock', 'provider_error', detail='x' * 2000)
    assert len(db_session.execute(select(LookupActivity.detail)).scalar_one()) == 500


def test_count_outcomes_filters():
    log_activity('mock', 'cache_hit', run_id='r1', cached=True)
    log_activity('mock', 'provider_ok', run_id='r1', cost_cents=12)
    log_activity('mock', 'provider_ok', run_id='r2', cost_cents=12)
    log_activity('mock', 'budget_rejected', subject_id='s9')
    assert count_outcomes(run_id='r1') == {'cache_hit': 1, 'provider_ok': 1}
    assert count_outcomes(subject_id='s9') == {'budget_rejected': 1}
    assert count_outcomes()['provider_ok'] == 2
