from types import SimpleNamespace
from unittest.mock import patch

from oci._vendor.requests import Session
from oci._vendor.requests.utils import select_proxy

import oci_context
from oci_context import OciContext, create_context, proxy_settings


class FakeClient:
    endpoint = 'https://devops.eu-frankfurt-1.oci.oraclecloud.com'

    def __init__(self, config, **kwargs):
        self.config = config
        self.kwargs = kwargs
        self.base_client = SimpleNamespace(endpoint=self.endpoint, session=Session())


class ObjectStorageClient(FakeClient):
    endpoint = 'https://objectstorage.example.com'


def test_proxy_settings_absent():
    assert proxy_settings({}) is None


def test_proxy_settings_with_no_proxy():
    proxies = proxy_settings({
        'GLOBAL_AGENT_HTTP_PROXY': 'http://proxy:80',
        'GLOBAL_AGENT_NO_PROXY': 'localhost,.internal',
    })

    assert proxies == {'http': 'http://proxy:80', 'https': 'http://proxy:80', 'no_proxy': 'localhost,.internal'}


def test_client_gets_signer_and_proxies():
    signer = object()
    ctx = OciContext({'tenancy': 'ocid1.tenancy.x', 'region': 'eu-frankfurt-1'}, signer,
                     {'http': 'http://proxy:80', 'https': 'http://proxy:80'})

    client = ctx.client(FakeClient)

    assert client.kwargs['signer'] is signer
    assert client.base_client.session.proxies['https'] == 'http://proxy:80'
    assert ctx.tenancy_id == 'ocid1.tenancy.x'
    assert ctx.region == 'eu-frankfurt-1'


def test_no_proxy_hosts_are_not_proxied():
    proxies = proxy_settings({
        'GLOBAL_AGENT_HTTP_PROXY': 'http://proxy.invalid:3128',
        'GLOBAL_AGENT_NO_PROXY': 'localhost,objectstorage.example.com',
    })
    ctx = OciContext({'tenancy': 't'}, proxies=proxies)

    exempt = ctx.client(ObjectStorageClient).base_client.session
    proxied = ctx.client(FakeClient).base_client.session

    assert select_proxy('https://objectstorage.example.com/n/ns/b/bucket', exempt.proxies) is None
    assert select_proxy(FakeClient.endpoint + '/20210630/projects', proxied.proxies) == 'http://proxy.invalid:3128'
    assert 'no_proxy' not in proxied.proxies
    assert ctx.bypasses_proxy('https://localhost:8080/x')
    assert not OciContext({}, proxies={'https': 'http://p:1'}).bypasses_proxy(FakeClient.endpoint)


def test_each_call_creates_a_new_client():
    ctx = OciContext({'tenancy': 't'})

    assert ctx.client(FakeClient) is not ctx.client(FakeClient)
    assert 'signer' not in ctx.client(FakeClient).kwargs


def test_tenancy_falls_back_to_signer():
    ctx = OciContext({'region': 'r'}, SimpleNamespace(tenancy_id='ocid1.tenancy.ip'))

    assert ctx.tenancy_id == 'ocid1.tenancy.ip'


def test_create_context_none_without_config():
    with patch.object(oci_context, 'get_oci_config', return_value=(None, None)):
        assert create_context() is None


def test_create_context_applies_proxy():
    with patch.object(oci_context, 'get_oci_config', return_value=({'tenancy': 't'}, None)):
        ctx = create_context(environ={'GLOBAL_AGENT_HTTP_PROXY': 'http://p:3128'})

    assert ctx.proxies['http'] == 'http://p:3128'
