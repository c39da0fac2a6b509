"""
Offline provider: deterministic fake contacts derived from the request body.

Used for local smoke runs and tests (MOCK_PROVIDER=1). Answers in the same
body shape as BatchData so the real parse path is exercised. Generated
numbers never use the 555 exchange, so they do not trip demo detection.
"""
import hashlib
import json
import threading

from skiptrace.services.provider import SkipTraceProvider, ProviderResponse


class MockProvider(SkipTraceProvider):
    name = 'mock'
    endpoint = 'mock://skip-trace'

    def __init__(self, latency_ms=0):
        self.latency_ms = latency_ms
        self.calls = 0
        self._lock = threading.Lock()

    def send(self, payload):
        with self._lock:
            self.calls += 1
        digest = hashlib.sha256(json.dumps(payload, sort_keys=True).encode()).hexdigest()
        area = 200 + int(digest[0:4], 16) % 700
        exchange = 200 + int(digest[4:8], 16) % 700
        if exchange == 555:
            exchange = 556
        line = int(digest[8:12], 16) % 10000
        body = {
            'status': {'code': 200, 'text': 'OK'},
            'results': {
                'persons': [{
                    'phoneNumbers': [{'number': f'{area}{exchange}{line:04d}', 'type': 'Mobile', 'dnc': False}],
                    'emails': [{'email': f'owner.{digest[:8]}@example.net'}],
                }],
            },
        }
        return ProviderResponse(status_code=200, body=json.dumps(body), elapsed_ms=self.latency_ms)
