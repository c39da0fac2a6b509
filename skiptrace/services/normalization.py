"""
Address and owner-name normalization, idempotency keys and payload hashes.

Two requests for the same property + owner must normalize to the same
canonical strings, whatever casing, punctuation or suffix spelling was used.
"""
import hashlib
import json
import re
from dataclasses import dataclass
from typing import Any, Dict, Union

from skiptrace.errors import ValidationError

STREET_SUFFIXES = {
    'AVENUE': 'AVE',
    'BOULEVARD': 'BLVD',
    'CIRCLE': 'CIR',
    'COURT': 'CT',
    'DRIVE': 'DR',
    'HIGHWAY': 'HWY',
    'LANE': 'LN',
    'PARKWAY': 'PKWY',
    'PLACE': 'PL',
    'ROAD': 'RD',
    'SQUARE': 'SQ',
    'STREET': 'ST',
    'TERRACE': 'TER',
    'TRAIL': 'TRL',
}

DIRECTIONALS = {
    'NORTH': 'N',
    'NORTHEAST': 'NE',
    'EAST': 'E',
    'SOUTHEAST': 'SE',
    'SOUTH': 'S',
    'SOUTHWEST': 'SW',
    'WEST': 'W',
    'NORTHWEST': 'NW',
}

_UNIT_WORDS = r'APT|APARTMENT|SUITE|STE|UNIT|BLDG|BUILDING|FLOOR|FL|LOT|SPACE|SPC'
# A unit number is one letter or a token containing a digit ("4", "4B", "B-12"), so
# "SPACE CENTER BLVD" keeps its name
_UNIT_TOKEN = r'(?:[A-Z]|[0-9A-Z-]*[0-9][0-9A-Z-]*)'
_UNIT_DESIGNATOR = rf'(?:(?:{_UNIT_WORDS})\.?(?:\s*#\s*|\s+)|#\s*){_UNIT_TOKEN}'
_UNIT_PREFIX_RE = re.compile(rf'^{_UNIT_DESIGNATOR}[\s,]+')
_UNIT_SUFFIX_RE = re.compile(rf'[\s,]+{_UNIT_DESIGNATOR}$')

# Owner-name tails that do not identify a different person or entity
_OWNER_SUFFIX_RE = re.compile(
    r'\s+(?:JR|SR|II|III|IV|V|ESQ|ESQUIRE|ET AL|ET UX|AND OTHERS'
    r'|LIVING TRUST|FAMILY TRUST|TRUSTEE|TRUST|REVOCABLE|IRREVOCABLE'
    r'|LLC|LC|LLP|LP|INCORPORATED|INC|CORPORATION|CORP|LIMITED|COMPANY|PARTNERSHIP|PARTNERS)$'
)
_PUNCT_RE = re.compile(r"[^\w\s]")
_SPACES_RE = re.compile(r'\s+')


@dataclass(frozen=True)
class NormalizedAddress:
    street: str
    city: str = ''
    state: str = ''
    zip: str = ''

    @property
    def canonical(self) -> str:
        return ' '.join(part for part in (self.street, self.city, self.state, self.zip) if part)


@dataclass(frozen=True)
class NormalizedPerson:
    first: str = ''
    last: str = ''

    @property
    def canonical(self) -> str:
        return ' '.join(part for part in (self.first, self.last) if part)


def _clean(value) -> str:
    text = _PUNCT_RE.sub(' ', str(value or '').upper())
    return _SPACES_RE.sub(' ', text).strip()


def normalize_street(street: str) -> str:
    line = str(street or '').upper().strip()
    # "APT 4 123 MAIN ST", "123 MAIN ST APT 4", "123 MAIN ST #4B", "... STE 2 UNIT 7"
    line = _UNIT_PREFIX_RE.sub('', line)
    while True:
        stripped = _UNIT_SUFFIX_RE.sub('', line)
        if stripped == line:
            break
        line = stripped
    line = _clean(line)
    tokens = [DIRECTIONALS.get(t, STREET_SUFFIXES.get(t, t)) for t in line.split(' ') if t]
    return ' '.join(tokens)


def _split_address_string(raw: str) -> Dict[str, str]:
    """Best-effort split of "street, city, ST 12345" into components."""
    parts = [p.strip() for p in raw.split(',')]
    fields = {'street': parts[0] if parts else ''}
    if len(parts) >= 2:
        fields['city'] = parts[1]
    if len(parts) >= 3:
        tail = parts[2].split()
        if tail:
            fields['state'] = tail[0]
        if len(tail) > 1:
            fields['zip'] = tail[1]
    return fields


def normalize_address(raw: Union[Dict[str, Any], str]) -> NormalizedAddress:
    """Normalize a raw address dict ({street, city, state, zip}) or string.

    Raises ValidationError when there is no street, or neither a ZIP nor a city + state.
    """
    if isinstance(raw, str):
        raw = _split_address_string(raw)
    raw = raw or {}
    street = normalize_street(raw.get('street') or raw.get('line1') or raw.get('address') or '')
    city = _clean(raw.get('city'))
    state = _clean(raw.get('state'))
    zip_code = re.sub(r'\D', '', str(raw.get('zip') or raw.get('zip_code') or raw.get('zipCode') or ''))[:5]

    if not street:
        raise ValidationError('address has no street line')
    if not zip_code and not (city and state):
        raise ValidationError('address needs a ZIP or a city and state')
    return NormalizedAddress(street=street, city=city, state=state, zip=zip_code)


def strip_owner_suffixes(name: str) -> str:
    """Drop generational, legal and entity tails: "SMITH JR" and "SMITH FAMILY TRUST" become "SMITH"."""
    while True:
        stripped = _OWNER_SUFFIX_RE.sub('', name)
        if stripped == name:
            return name
        name = stripped


def normalize_person(raw: Union[Dict[str, Any], str]) -> NormalizedPerson:
    """Normalize an owner name.

    A string has its suffixes stripped and is then split on its last space
    into first/last, so "John Smith Jr." gives last name SMITH.
    """
    if isinstance(raw, str):
        cleaned = strip_owner_suffixes(_clean(raw))
        first, _, last = cleaned.rpartition(' ')
        raw = {'first': first, 'last': last}
    raw = raw or {}
    first = _clean(raw.get('first') or raw.get('first_name') or raw.get('firstName'))
    last = strip_owner_suffixes(_clean(raw.get('last') or raw.get('last_name') or raw.get('lastName')))
    if not last:
        raise ValidationError('owner name has no last name')
    return NormalizedPerson(first=first, last=last)


def idempotency_key(provider: str, address: NormalizedAddress, person: NormalizedPerson) -> str:
    """Stable SHA-256 over provider + canonical address + canonical person."""
    material = f'{provider}|{address.canonical}|{person.canonical}'
    return hashlib.sha256(material.encode()).hexdigest()


def dedupe_key(address: NormalizedAddress, person: NormalizedPerson) -> str:
    return f'{address.canonical}|{person.canonical}'


def payload_hash(payload: Dict[str, Any]) -> str:
    """SHA-256 of the exact request body, key-order independent."""
    return hashlib.sha256(json.dumps(payload, sort_keys=True).encode()).hexdigest()
