from types import SimpleNamespace

import pytest

from work_requests import (RemoteOperationFailed, WorkRequestTimeout, await_completion,
                           normalize_status)


def scripted(*statuses, resources=('ocid1.resource.1',)):
    """get_work_request stand-in walking through the given statuses."""
    seen = []

    def get_work_request(request_id):
        status = statuses[min(len(seen), len(statuses) - 1)]
        seen.append(request_id)
        items = [SimpleNamespace(identifier=r) for r in resources]
        return SimpleNamespace(data=SimpleNamespace(status=status, resources=items))

    get_work_request.seen = seen
    return get_work_request


def test_succeeded_returns_first_resource(no_sleep):
    sleep, delays = no_sleep
    get = scripted('ACCEPTED', 'IN_PROGRESS', 'SUCCEEDED', resources=('first', 'second'))

    assert await_completion(get, 'wr1', 'create project', sleep=sleep) == 'first'
    assert get.seen == ['wr1', 'wr1', 'wr1']
    assert delays == [2.0, 2.0]


def test_succeeded_without_resources_returns_none(no_sleep):
    sleep, _ = no_sleep
    get = scripted('SUCCEEDED', resources=())

    assert await_completion(get, 'wr1', 'create log', sleep=sleep) is None


@pytest.mark.parametrize('status', ['FAILED', 'CANCELED', 'Canceled'])
def test_failed_or_canceled_raises(no_sleep, status):
    sleep, _ = no_sleep
    get = scripted('IN_PROGRESS', status)

    with pytest.raises(RemoteOperationFailed) as excinfo:
        await_completion(get, 'wr1', 'create knowledge base', sleep=sleep)

    assert excinfo.value.status == status.upper()
    assert excinfo.value.request_id == 'wr1'
    assert 'create knowledge base' in str(excinfo.value)


def test_timeout_after_attempt_limit(no_sleep):
    sleep, delays = no_sleep
    get = scripted('IN_PROGRESS')

    with pytest.raises(WorkRequestTimeout) as excinfo:
        await_completion(get, 'wr1', 'delete project', poll_interval=2.0, max_wait=10.0, sleep=sleep)

    assert len(get.seen) == 5
    assert len(delays) == 4
    assert excinfo.value.description == 'delete project'


def test_default_limit_is_thirty_attempts(no_sleep):
    sleep, _ = no_sleep
    get = scripted('WAITING')

    with pytest.raises(WorkRequestTimeout):
        await_completion(get, 'wr1', 'create project', sleep=sleep)

    assert len(get.seen) == 30


def test_normalize_status():
    assert normalize_status('in progress') == 'IN_PROGRESS'
    assert normalize_status(None) == ''
