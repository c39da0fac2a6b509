"""
Skip-trace provider contracts and the BatchData HTTP client.

A provider turns a normalized address + owner into a request payload,
sends it (send), and classifies / parses the raw response (parse). The
orchestrator owns ledgering, caching and retries; providers only talk HTTP.
"""
import json
import logging
import re
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import requests

from skiptrace.config import (
    BATCHDATA_API_KEY, BATCHDATA_BASE_URL, BATCHDATA_SKIPTRACE_PATH,
    BATCHDATA_AUTH_STYLE, SKIP_TRACE_TIMEOUT_SECONDS, SKIP_TRACE_PROVIDER, MOCK_PROVIDER,
)
from skiptrace.errors import (
    SkipTraceError, ValidationError, TransientProviderError,
    AuthConfigurationError, ProviderNotFoundError,
)
from skiptrace.services.normalization import NormalizedAddress, NormalizedPerson

logger = logging.getLogger('services.provider')

DEMO_EMAIL_DOMAINS = ('demo.convexa.local',)
_DEMO_PHONE_RE = re.compile(r'^1?\d{3}555\d{4}$')


@dataclass
class ProviderResponse:
    status_code: int
    body: str
    elapsed_ms: int = 0

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    def json(self) -> Optional[Dict[str, Any]]:
        try:
            data = json.loads(self.body) if self.body else None
        except ValueError:
            return None
        return data if isinstance(data, dict) else None


class SkipTraceProvider(ABC):
    """Base class for skip-trace data providers."""
    name: str = ''
    endpoint: str = ''

    def build_payload(self, address: NormalizedAddress, person: NormalizedPerson) -> Dict[str, Any]:
        """Request body for one lookup. Built from normalized fields only, so it hashes stably."""
        return {
            'requests': [{
                'propertyAddress': {
                    'street': address.street,
                    'city': address.city,
                    'state': address.state,
                    'zip': address.zip,
                },
                'name': {'first': person.first, 'last': person.last},
            }],
        }

    @abstractmethod
    def send(self, payload: Dict[str, Any]) -> ProviderResponse:
        """Perform the network call. Raises TransientProviderError on timeout / connection failure."""
        ...

    def parse(self, response: ProviderResponse) -> Dict[str, List[dict]]:
        """Classify the response and extract {phones, emails}. Raises a SkipTraceError subclass on failure."""
        classify_status(response)
        data = response.json()
        if data is None:
            raise TransientProviderError('unparseable provider response', status_code=response.status_code)
        contacts = extract_contacts(data)
        if is_demo_response(data, contacts):
            raise AuthConfigurationError(
                f'{self.name} returned demo/sandbox data; check the API key and environment'
            )
        return contacts


def classify_status(response: ProviderResponse):
    """Map a non-2xx HTTP status onto the error taxonomy."""
    status = response.status_code
    if 200 <= status < 300:
        return
    snippet = (response.body or '')[:200]
    if status in (401, 403):
        raise AuthConfigurationError(f'provider rejected credentials (HTTP {status})')
    if status == 404:
        raise ProviderNotFoundError('provider has no record for subject')
    if status == 429 or status >= 500:
        raise TransientProviderError(f'HTTP {status}: {snippet}', status_code=status)
    if status in (400, 422):
        raise ValidationError(f'provider rejected request (HTTP {status}): {snippet}')
    raise SkipTraceError(f'unexpected HTTP {status}: {snippet}')


def _digits(value) -> str:
    return re.sub(r'\D', '', str(value or ''))


def _as_list(value) -> list:
    return value if isinstance(value, list) else []


def extract_contacts(data: Dict[str, Any]) -> Dict[str, List[dict]]:
    """Pull phones/emails out of a BatchData-style body into {phones, emails}.

    Understands both results.persons[].phoneNumbers/emails and the flat
    phones/emails shape. Deduplicates by number / address, keeping first seen.
    Entries of any other shape are skipped.
    """
    persons = []
    results = data.get('results')
    if isinstance(results, dict):
        persons = results.get('persons') or []
    elif isinstance(results, list):
        persons = results
    if not persons and ('phones' in data or 'emails' in data):
        persons = [data]

    phones, emails = [], []
    seen_numbers, seen_emails = set(), set()
    for person in _as_list(persons):
        if not isinstance(person, dict):
            continue
        for p in _as_list(person.get('phoneNumbers') or person.get('phones')):
            if isinstance(p, (str, int)):
                p = {'number': p}
            elif not isinstance(p, dict):
                continue
            number = _digits(p.get('number'))
            if not number or number in seen_numbers:
                continue
            seen_numbers.add(number)
            phones.append({
                'number': number,
                'type': str(p.get('type') or 'unknown').lower(),
                'dnc': bool(p.get('dnc') or p.get('is_dnc') or False),
            })
        for e in _as_list(person.get('emails')):
            if isinstance(e, str):
                e = {'email': e}
            elif not isinstance(e, dict):
                continue
            address = str(e.get('email') or e.get('address') or '').strip().lower()
            if not address or address in seen_emails:
                continue
            seen_emails.add(address)
            emails.append({'address': address, 'type': str(e.get('type') or 'unknown').lower()})
    return {'phones': phones, 'emails': emails}


def is_demo_response(data: Dict[str, Any], contacts: Dict[str, List[dict]]) -> bool:
    """True when the provider flags sandbox mode or the contacts carry demo fingerprints."""
    meta = data.get('meta')
    if isinstance(meta, dict) and (meta.get('demo') or meta.get('sandbox')):
        return True
    if any(e['address'].endswith(DEMO_EMAIL_DOMAINS) for e in contacts.get('emails', [])):
        return True
    return any(_DEMO_PHONE_RE.match(p['number']) for p in contacts.get('phones', []))


class BatchDataProvider(SkipTraceProvider):
    name = 'batchdata'

    def __init__(self, api_key=BATCHDATA_API_KEY, base_url=BATCHDATA_BASE_URL,
                 path=BATCHDATA_SKIPTRACE_PATH, auth_style=BATCHDATA_AUTH_STYLE,
                 timeout=SKIP_TRACE_TIMEOUT_SECONDS, http=None):
        self.api_key = api_key
        self.url = f"{base_url.rstrip('/')}/{path.lstrip('/')}"
        self.endpoint = path
        self.auth_style = (auth_style or 'bearer').lower()
        self.timeout = timeout
        self.http = http or requests.Session()

    def _headers(self):
        headers = {'Content-Type': 'application/json', 'Accept': 'application/json'}
        if self.auth_style == 'x-api-key':
            headers['X-API-Key'] = self.api_key
        else:
            headers['Authorization'] = f'Bearer {self.api_key}'
        return headers

    def send(self, payload):
        if not self.api_key:
            raise AuthConfigurationError('BATCHDATA_API_KEY is not set')

        started = time.monotonic()
        try:
            resp = self.http.post(self.url, json=payload, headers=self._headers(), timeout=self.timeout)
        except requests.exceptions.Timeout as e:
            raise TransientProviderError(f'timeout after {self.timeout}s: {e}') from e
        except requests.exceptions.RequestException as e:
            raise TransientProviderError(f'connection error: {e}') from e
        elapsed_ms = int((time.monotonic() - started) * 1000)

        logger.debug("POST %s → %d in %dms", self.url, resp.status_code, elapsed_ms)
        if resp.status_code >= 400:
            logger.warning("BatchData HTTP %d: %s", resp.status_code, resp.text[:200])
        return ProviderResponse(status_code=resp.status_code, body=resp.text, elapsed_ms=elapsed_ms)


PROVIDERS = {
    'batchdata': BatchDataProvider,
}


def get_provider() -> SkipTraceProvider:
    """Instantiate the configured provider (the offline mock when MOCK_PROVIDER is set)."""
    if MOCK_PROVIDER:
        from skiptrace.services.mock_provider import MockProvider
        logger.info("MOCK_PROVIDER active, using offline skip-trace provider")
        return MockProvider()
    provider_cls = PROVIDERS.get(SKIP_TRACE_PROVIDER)
    if provider_cls is None:
        raise ValueError(f"Unknown skip-trace provider '{SKIP_TRACE_PROVIDER}'. Available: {list(PROVIDERS)}")
    return provider_cls()


def active_provider_name() -> str:
    """Name used in idempotency keys and ledger rows for the configured provider."""
    return 'mock' if MOCK_PROVIDER else SKIP_TRACE_PROVIDER
