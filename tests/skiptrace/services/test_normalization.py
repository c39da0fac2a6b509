"""Tests for skiptrace.services.normalization: canonical forms, keys and hashes."""
import pytest

from skiptrace.errors import ValidationError
from skiptrace.services.normalization import (
    normalize_address, normalize_person, normalize_street,
    idempotency_key, dedupe_key, payload_hash,
)


class TestNormalizeStreet:

    def test_suffix_and_directional_abbreviated(self):
        assert normalize_street('123 North Main Street') == '123 N MAIN ST'

    def test_punctuation_and_spacing_collapsed(self):
        assert normalize_street('  42  w. elm   ave. ') == '42 W ELM AVE'

    def test_leading_unit_designator_dropped(self):
        assert normalize_street('Apt 4B 77 Sunset Boulevard') == '77 SUNSET BLVD'

    @pytest.mark.parametrize('street', [
        '123 Main Street Apt 4',
        '123 Main Street, Apt. 4',
        '123 Main St #4',
        '123 Main St Unit 4 Bldg B',
        'Unit 4 123 Main Street',
    ])
    def test_unit_designator_dropped_wherever_it_appears(self, street):
        assert normalize_street(street) == '123 MAIN ST'

    def test_street_name_resembling_unit_word_kept(self):
        assert normalize_street('1 Space Center Boulevard') == '1 SPACE CENTER BLVD'


class TestNormalizeAddress:

    def test_equivalent_spellings_share_canonical_form(self):
        a = normalize_address({'street': '123 North Main Street', 'city': 'Springfield',
                               'state': 'il', 'zip': '62701-1234'})
        b = normalize_address({'street': '123 n. main st', 'city': 'SPRINGFIELD',
                               'state': 'IL', 'zip': '62701'})
        assert a == b
        assert a.canonical == '123 N MAIN ST SPRINGFIELD IL 62701'

    def test_zip_truncated_to_five_digits(self):
        assert normalize_address({'street': '1 A St', 'zip': '62701-1234'}).zip == '62701'

    def test_alternate_field_names(self):
        addr = normalize_address({'line1': '9 Pine Rd', 'zip_code': '10001'})
        assert addr.street == '9 PINE RD'
        assert addr.zip == '10001'

    def test_parses_comma_separated_string(self):
        addr = normalize_address('500 Lake Drive, Madison, WI 53703')
        assert addr.street == '500 LAKE DR'
        assert addr.city == 'MADISON'
        assert addr.state == 'WI'
        assert addr.zip == '53703'

    def test_city_and_state_without_zip_is_accepted(self):
        addr = normalize_address({'street': '1 A St', 'city': 'Reno', 'state': 'NV'})
        assert addr.zip == ''

    def test_missing_street_rejected(self):
        with pytest.raises(ValidationError, match='street'):
            normalize_address({'city': 'Reno', 'state': 'NV', 'zip': '89501'})

    def test_missing_zip_and_city_state_rejected(self):
        with pytest.raises(ValidationError):
            normalize_address({'street': '1 A St', 'city': 'Reno'})

    def test_none_rejected(self):
        with pytest.raises(ValidationError):
            normalize_address(None)


class TestNormalizePerson:

    def test_dict_input(self):
        person = normalize_person({'first': 'Jane', 'last': "O'Neil"})
        assert person.first == 'JANE'
        assert person.last == 'O NEIL'
        assert person.canonical == 'JANE O NEIL'

    def test_string_split_on_last_space(self):
        person = normalize_person('mary ann smith')
        assert person.first == 'MARY ANN'
        assert person.last == 'SMITH'

    @pytest.mark.parametrize('last', ['Smith Jr.', 'Smith, Sr', 'Smith III', 'Smith Esq.', 'Smith et al',
                                      'Smith Family Trust', 'Smith Revocable Trust', 'Smith LLC'])
    def test_owner_suffixes_stripped(self, last):
        assert normalize_person({'first': 'John', 'last': last}).canonical == 'JOHN SMITH'

    def test_string_name_with_suffix(self):
        person = normalize_person('John Smith Jr.')
        assert person.first == 'JOHN'
        assert person.last == 'SMITH'

    def test_bare_suffix_is_not_emptied(self):
        assert normalize_person({'last': 'Jr'}).last == 'JR'

    def test_camel_case_keys(self):
        assert normalize_person({'firstName': 'Al', 'lastName': 'Ng'}).canonical == 'AL NG'

    def test_missing_last_name_rejected(self):
        with pytest.raises(ValidationError, match='last name'):
            normalize_person({'first': 'Cher'})

    def test_validation_error_category(self):
        with pytest.raises(ValidationError) as exc_info:
            normalize_person({})
        assert exc_info.value.describe().startswith('validation:')


class TestKeys:

    def _pair(self, street='123 Main St'):
        return (normalize_address({'street': street, 'zip': '62701'}),
                normalize_person({'first': 'Jane', 'last': 'Doe'}))

    def test_idempotency_key_is_stable_across_spellings(self):
        a = idempotency_key('batchdata', *self._pair('123 Main Street'))
        b = idempotency_key('batchdata', *self._pair('123 main st.'))
        assert a == b
        assert len(a) == 64

    def test_idempotency_key_ignores_unit_and_owner_suffix(self):
        a = idempotency_key('batchdata', normalize_address({'street': '123 Main Street Apt 4', 'zip': '90210'}),
                            normalize_person({'first': 'John', 'last': 'Smith Jr.'}))
        b = idempotency_key('batchdata', normalize_address({'street': 'Apt 4 123 Main St', 'zip': '90210'}),
                            normalize_person({'first': 'John', 'last': 'Smith'}))
        assert a == b

    def test_idempotency_key_depends_on_provider(self):
        pair = self._pair()
        assert idempotency_key('batchdata', *pair) != idempotency_key('mock', *pair)

    def test_dedupe_key_is_provider_free(self):
        assert dedupe_key(*self._pair()) == '123 MAIN ST 62701|JANE DOE'

    def test_payload_hash_ignores_key_order(self):
        assert payload_hash({'a': 1, 'b': [1, 2]}) == payload_hash({'b': [1, 2], 'a': 1})
        assert payload_hash({'a': 1}) != payload_hash({'a': 2})
