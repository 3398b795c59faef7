from types import SimpleNamespace
from unittest.mock import MagicMock

import oci
import pytest

from devops_utils import DEFAULT_LOG_GROUP, DevOpsApi, _list_all, is_gone, tag_value, work_request_id
from work_requests import RemoteOperationFailed


class MockContext:
    """Hands out one MagicMock per SDK client class."""

    tenancy_id = 'ocid1.tenancy.oc1..test'
    region = 'eu-frankfurt-1'

    def __init__(self):
        self.clients = {}

    def client(self, client_class, **kwargs):
        return self.clients.setdefault(client_class, MagicMock(name=client_class.__name__))


def page(items, next_page=None):
    return SimpleNamespace(data=SimpleNamespace(items=items), has_next_page=next_page is not None,
                           next_page=next_page)


def work_request(status, *identifiers):
    return SimpleNamespace(data=SimpleNamespace(
        status=status, resources=[SimpleNamespace(identifier=i) for i in identifiers]))


@pytest.fixture
def ctx():
    return MockContext()


@pytest.fixture
def api(ctx):
    return DevOpsApi(ctx, poll_interval=0.01, max_wait=0.05, sleep=lambda seconds: None)


def test_list_all_follows_pages():
    list_method = MagicMock(side_effect=[page([1, 2], 'p2'), page([3])])

    assert _list_all(list_method, 'comp', limit=10) == [1, 2, 3]
    assert list_method.call_args_list[1].kwargs == {'limit': 10, 'page': 'p2'}


def test_resource_helpers():
    assert is_gone(SimpleNamespace(lifecycle_state='DELETING'))
    assert not is_gone(SimpleNamespace(lifecycle_state='ACTIVE'))
    assert tag_value(SimpleNamespace(freeform_tags=None), 'x') is None
    assert work_request_id(SimpleNamespace(headers={'opc-work-request-id': 'wr1'})) == 'wr1'
    assert work_request_id(SimpleNamespace(headers=None)) is None


def test_delete_project_waits_for_work_request(api, ctx):
    devops = ctx.client(oci.devops.DevopsClient)
    devops.delete_project.return_value = SimpleNamespace(headers={'opc-work-request-id': 'wr1'})
    devops.get_work_request.return_value = work_request('SUCCEEDED', 'ocid1.project.1')

    api.delete_project('ocid1.project.1')

    devops.get_work_request.assert_called_with('wr1')


def test_failed_work_request_surfaces(api, ctx):
    devops = ctx.client(oci.devops.DevopsClient)
    devops.delete_build_pipeline.return_value = SimpleNamespace(headers={'opc-work-request-id': 'wr1'})
    devops.get_work_request.return_value = work_request('FAILED')

    with pytest.raises(RemoteOperationFailed):
        api.delete_build_pipeline('ocid1.pipeline.1')


def test_delete_without_wait_does_not_poll(api, ctx):
    devops = ctx.client(oci.devops.DevopsClient)
    devops.delete_deploy_stage.return_value = SimpleNamespace(headers={'opc-work-request-id': 'wr1'})

    api.delete_deploy_stage('ocid1.stage.1', wait=False)

    devops.get_work_request.assert_not_called()


def test_knowledge_base_creation_returns_work_request(api, ctx):
    adm = ctx.client(oci.adm.ApplicationDependencyManagementClient)
    adm.create_knowledge_base.return_value = SimpleNamespace(headers={'opc-work-request-id': 'wr-kb'})
    adm.get_work_request.return_value = work_request('SUCCEEDED', 'ocid1.kb.1')

    request_id = api.create_knowledge_base('comp', 'demo', tags={'t': 'v'})

    assert request_id == 'wr-kb'
    assert api.wait_for_adm_work_request('kb', request_id) == 'ocid1.kb.1'
    details = adm.create_knowledge_base.call_args.args[0]
    assert details.display_name == 'demoAudits'


def test_default_log_group_is_reused(api, ctx):
    logging_client = ctx.client(oci.logging.LoggingManagementClient)
    logging_client.list_log_groups.return_value = page([SimpleNamespace(id='ocid1.loggroup.1')])

    assert api.get_or_create_default_log_group('comp') == ('ocid1.loggroup.1', False)
    assert logging_client.list_log_groups.call_args.kwargs['display_name'] == DEFAULT_LOG_GROUP
    logging_client.create_log_group.assert_not_called()


def test_notification_topic_created_when_missing(api, ctx):
    ons = ctx.client(oci.ons.NotificationControlPlaneClient)
    ons.list_topics.return_value = page([])
    ons.create_topic.return_value = SimpleNamespace(data=SimpleNamespace(topic_id='ocid1.topic.1'))

    assert api.get_or_create_notification_topic('comp') == ('ocid1.topic.1', True)


def test_container_repository_name_is_lowercased(api, ctx):
    artifacts = ctx.client(oci.artifacts.ArtifactsClient)
    artifacts.create_container_repository.return_value = SimpleNamespace(data='repo')

    api.create_container_repository('comp', 'Demo-App-jvm')

    assert artifacts.create_container_repository.call_args.args[0].display_name == 'demo-app-jvm'


def test_container_image_uri(api):
    repository = SimpleNamespace(namespace='ns', display_name='demo-app-jvm')

    assert api.container_image_uri(repository) == 'eu-frankfurt-1.ocir.io/ns/demo-app-jvm:${DOCKER_TAG}'
    assert api.container_image_uri(repository, '1.0').endswith(':1.0')
