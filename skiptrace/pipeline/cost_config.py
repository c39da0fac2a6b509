"""
Per-provider pricing for the budget guardrail and the ledger.

Values come from cost_config.yaml beside this module, layered over the
built-in defaults so a partial YAML file still yields a complete config.
Loaded once per process and shared by every worker thread.
"""
import copy
import logging
import os
import threading

import yaml

logger = logging.getLogger('pipeline.cost')

CONFIG_PATH = os.path.join(os.path.dirname(__file__), 'cost_config.yaml')

DEFAULT_COST_CENTS = 12
DEFAULT_WARNING_THRESHOLD = 0.80

DEFAULTS = {
    'version': 'default',
    'providers': {
        'batchdata': {'cost_cents': 12, 'endpoint': '/v1/property/skip-trace', 'warning_threshold': 0.80},
        'mock': {'cost_cents': 12, 'endpoint': 'mock://skip-trace', 'warning_threshold': 0.80},
    },
    'guardrails': {'default_daily_cap_cents': 0},
}

_lock = threading.Lock()
_loaded = None


def _merge(base: dict, override: dict) -> dict:
    merged = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_cost_config() -> dict:
    """Return the pricing config, reading the YAML file on first use."""
    global _loaded
    with _lock:
        if _loaded is None:
            try:
                with open(CONFIG_PATH) as f:
                    _loaded = _merge(DEFAULTS, yaml.safe_load(f))
                logger.info("Cost config %s loaded (%d providers)",
                            _loaded.get('version'), len(_loaded['providers']))
            except (OSError, yaml.YAMLError) as e:
                logger.warning("Cost config unreadable (%s), using built-in prices", e)
                _loaded = copy.deepcopy(DEFAULTS)
        return _loaded


def _provider(name: str) -> dict:
    return load_cost_config()['providers'].get(name, {})


def get_cost_cents(provider: str) -> int:
    """Price of one billable lookup, in cents."""
    return int(_provider(provider).get('cost_cents', DEFAULT_COST_CENTS))


def get_endpoint(provider: str) -> str:
    return _provider(provider).get('endpoint', '')


def get_warning_threshold(provider: str) -> float:
    """Fraction (0-1) of the daily cap above which spend is logged as a warning."""
    return float(_provider(provider).get('warning_threshold', DEFAULT_WARNING_THRESHOLD))


def get_default_daily_cap_cents() -> int:
    return int(load_cost_config()['guardrails'].get('default_daily_cap_cents', 0))


def reset_cache():
    global _loaded
    with _lock:
        _loaded = None
