"""
Unit tests for the LIFO cleanup stack
"""
import pytest
from kubernetes import client

from pds_integration.cleanup import DeferralStack, is_not_found
from pds_integration.errors import MultiError, NotFoundError, PDSTestError


@pytest.mark.unit
def test_drain_runs_in_reverse_order():
    ran = []
    stack = DeferralStack()
    stack.push('delete credentials', ran.append, 'credentials')
    stack.push('delete target', ran.append, 'target')
    stack.push('remove deployment', ran.append, 'deployment')

    assert stack.pending() == ["remove deployment('deployment')", "delete target('target')",
                               "delete credentials('credentials')"]
    stack.drain()

    assert ran == ['deployment', 'target', 'credentials']
    assert len(stack) == 0


@pytest.mark.unit
def test_not_found_counts_as_cleaned_up():
    def gone():
        raise NotFoundError(404, 'DELETE', 'https://pds/api/backups/1')

    stack = DeferralStack()
    stack.push('delete backup', gone)

    assert not stack.drain()


@pytest.mark.unit
def test_failures_do_not_stop_remaining_deferrals():
    ran = []

    def broken():
        raise PDSTestError('control plane unavailable')

    stack = DeferralStack()
    stack.push('first', ran.append, 1)
    stack.push('broken', broken)
    stack.push('last', ran.append, 3)

    with pytest.raises(MultiError) as exc_info:
        stack.drain()

    assert ran == [3, 1]
    assert len(exc_info.value.errors) == 1


@pytest.mark.unit
def test_drain_can_return_errors():
    def broken():
        raise PDSTestError('boom')

    stack = DeferralStack()
    stack.push('broken', broken)

    errors = stack.drain(raise_errors=False)
    assert len(errors.errors) == 1


@pytest.mark.unit
def test_context_manager_keeps_body_failure():
    """Cleanup still runs and the body's error wins over cleanup errors"""
    ran = []

    def broken():
        raise PDSTestError('cleanup failed')

    with pytest.raises(ValueError):
        with DeferralStack() as stack:
            stack.push('record', ran.append, 'cleaned')
            stack.push('broken', broken)
            raise ValueError('scenario failed')

    assert ran == ['cleaned']


@pytest.mark.unit
def test_kwargs_are_passed_through():
    seen = {}
    stack = DeferralStack()
    stack.push('delete backup', lambda backup_id, local_only: seen.update(id=backup_id, local=local_only),
               'b-1', local_only=True)

    stack.drain()
    assert seen == {'id': 'b-1', 'local': True}
    assert stack.history == ["delete backup('b-1', local_only=True)"]


@pytest.mark.unit
def test_is_not_found():
    assert is_not_found(NotFoundError(404, 'GET', 'u'))
    assert is_not_found(client.exceptions.ApiException(status=404, reason='Not Found'))
    assert not is_not_found(client.exceptions.ApiException(status=500, reason='Internal'))
    assert not is_not_found(ValueError('x'))
