"""
Unit tests for chart version constraint matching
"""
import pytest

from pds_integration.errors import NoMatchingVersion
from pds_integration.versions import ConstraintError, parse_version, select_versions


@pytest.mark.unit
@pytest.mark.parametrize('constraint,versions,expected', [
    ('>=1.2, <1.5', ['1.1.0', '1.2.0', '1.4.9', '1.5.0', 'v1.3.0'], ['1.4.9', 'v1.3.0', '1.2.0']),
    ('>=1.2 <1.5', ['1.1.0', '1.2.0', '1.5.0'], ['1.2.0']),
    ('^1.2 || ^2.0', ['1.1.0', '1.9.0', '2.3.1', '3.0.0'], ['2.3.1', '1.9.0']),
    ('~1.2.3', ['1.2.2', '1.2.9', '1.3.0'], ['1.2.9']),
    ('^0.2.3', ['0.2.3', '0.2.9', '0.3.0'], ['0.2.9', '0.2.3']),
    ('1.2.x', ['1.2.0', '1.2.7', '1.3.0'], ['1.2.7', '1.2.0']),
    ('1.2 - 1.4.5', ['1.1.9', '1.2.0', '1.4.5', '1.4.6'], ['1.4.5', '1.2.0']),
    ('!=1.2.0', ['1.2.0', '1.2.1'], ['1.2.1']),
    ('*', ['1.0.0', '2.0.0', 'latest'], ['2.0.0', '1.0.0']),
])
def test_select_versions(constraint, versions, expected):
    assert select_versions(constraint, versions) == expected


@pytest.mark.unit
def test_prereleases_need_a_prerelease_constraint():
    versions = ['1.0.0', '1.1.0-rc.1']

    assert select_versions('*', versions) == ['1.0.0']
    assert select_versions('>=1.1.0-0', versions) == ['1.1.0-rc.1']


@pytest.mark.unit
def test_no_matching_version():
    with pytest.raises(NoMatchingVersion):
        select_versions('>=9', ['1.0.0', '2.0.0'])


@pytest.mark.unit
@pytest.mark.parametrize('constraint', ['', '>=abc', '1.2.3.4', '>=1 ||'])
def test_invalid_constraints(constraint):
    with pytest.raises(ConstraintError):
        select_versions(constraint, ['1.0.0'])


@pytest.mark.unit
def test_parse_version_is_lenient():
    assert str(parse_version('v1.2')) == '1.2.0'
    assert str(parse_version(' 3 ')) == '3.0.0'
