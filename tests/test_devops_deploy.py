import os
import sys
from types import SimpleNamespace

import pytest

import devops_deploy
from deploy_state import DeployStepFailed, StepState
from devops_deploy import (ConsolePrompter, DeployCancelled, DevOpsDeployer, new_deploy_tag,
                           sweep_by_deploy_tag)
from devops_utils import CODE_REPO_ID_TAG, DEPLOY_ID_TAG, PROJECT_ID_TAG

CLUSTER_ID = 'ocid1.cluster.oc1..oke'


class ScriptedPrompter:
    def __init__(self, *answers):
        self.answers = list(answers)
        self.asked = []

    def select_project_name(self, current_name):
        self.asked.append(current_name)
        return self.answers.pop(0) if self.answers else None


def creates(api):
    return [name for name in api.call_names() if name.startswith('create_')]


@pytest.fixture
def deployer(api, store):
    return DevOpsDeployer(api, store, prompter=ScriptedPrompter())


def deploy(deployer, compartment, repositories=('app',), cluster=CLUSTER_ID):
    return deployer.deploy(compartment.id, compartment.name, 'demo', repositories, cluster)


def test_deploy_records_every_resource(api, store, deployer, compartment):
    deploy(deployer, compartment)

    state = store.load()
    for key in ('notificationTopic', 'project', 'logGroup', 'projectLog', 'artifactsRepository',
                'okeClusterEnvironment', 'knowledgeBase'):
        assert state.step(key).is_succeeded, key
        assert state.resource_id(key) in api.resources
    app = state.repository('app')
    for key in ('codeRepository', 'jvmContainerRepository',
                'devbuildArtifact', 'devbuildPipeline', 'devbuildPipelineBuildStage', 'devbuildPipelineArtifactsStage',
                'nibuildArtifact', 'nibuildPipeline', 'nibuildPipelineBuildStage', 'nibuildPipelineArtifactsStage',
                'docker_jvmbuildArtifact', 'docker_jvmbuildPipeline', 'docker_jvmbuildPipelineBuildStage',
                'docker_jvmbuildPipelineArtifactsStage',
                'oke_deployJvmConfigArtifact', 'oke_deployJvmPipeline', 'deployJvmToOkeStage'):
        assert app.resource_id(key) in api.resources, key
    assert state.meta['compartment'] == {'ocid': compartment.id, 'name': 'dev'}
    assert state.meta['repository_names'] == ['app']
    assert state.meta['tag'].startswith('devops-deploy-')


def test_deploy_tags_link_resources(api, store, deployer, compartment):
    deploy(deployer, compartment)
    state = store.load()
    app = state.repository('app')
    tag = state.meta['tag']

    project = api.resources[state.resource_id('project')]
    container_repository = api.resources[app.resource_id('jvmContainerRepository')]
    pipeline = api.resources[app.resource_id('devbuildPipeline')]

    assert project.freeform_tags == {DEPLOY_ID_TAG: tag}
    assert container_repository.freeform_tags[PROJECT_ID_TAG] == project.id
    assert container_repository.display_name == 'demo-app-jvm'
    assert pipeline.freeform_tags[CODE_REPO_ID_TAG] == app.resource_id('codeRepository')


def test_docker_artifact_points_at_container_repository(api, store, deployer, compartment):
    deploy(deployer, compartment)
    app = store.load().repository('app')

    artifact = api.resources[app.resource_id('docker_jvmbuildArtifact')]
    manifest = api.resources[app.resource_id('oke_deployJvmConfigArtifact')]

    assert artifact.image_uri == 'us-phoenix-1.ocir.io/testns/demo-app-jvm:${DOCKER_TAG}'
    assert 'image: us-phoenix-1.ocir.io/testns/demo-app-jvm:${DOCKER_TAG}' in manifest.content


def test_without_cluster_no_oke_resources(api, store, deployer, compartment):
    deploy(deployer, compartment, cluster=None)

    state = store.load()
    assert state.step('okeClusterEnvironment').is_not_attempted
    assert state.repository('app').step('deployJvmToOkeStage').is_not_attempted
    assert api.calls_to('create_deploy_pipeline') == []


def test_second_run_creates_nothing(api, store, deployer, compartment):
    deploy(deployer, compartment)
    created = len(creates(api))

    DevOpsDeployer(api, store, store.load(), ScriptedPrompter()).deploy(compartment.id, 'dev', 'demo', ['app'])

    assert len(creates(api)) == created


def test_interrupted_deploy_resumes_at_failed_step(api, store, deployer, compartment):
    api.fail_on('create_build_pipeline')

    with pytest.raises(DeployStepFailed) as excinfo:
        deploy(deployer, compartment)

    assert excinfo.value.step == 'app/devbuildPipeline'
    saved = store.load()
    assert saved.repository('app').step('devbuildPipeline').is_failed
    assert saved.repository('app').step('devbuildArtifact').is_succeeded
    project_id = saved.resource_id('project')

    api.clear_failures()
    DevOpsDeployer(api, store, saved, ScriptedPrompter()).deploy(compartment.id, 'dev', 'demo', ['app'], CLUSTER_ID)

    final = store.load()
    assert final.resource_id('project') == project_id
    assert len(api.calls_to('create_project')) == 1
    assert len(api.calls_to('create_generic_deploy_artifact')) == 2
    assert final.repository('app').step('devbuildPipeline').is_succeeded


def test_recorded_resource_deleted_remotely_is_recreated(api, store, deployer, compartment):
    deploy(deployer, compartment)
    state = store.load()
    old_repo = state.resource_id('artifactsRepository')
    del api.resources[old_repo]

    DevOpsDeployer(api, store, state, ScriptedPrompter()).deploy(compartment.id, 'dev', 'demo')

    assert store.load().resource_id('artifactsRepository') not in (None, old_repo)


def test_project_name_conflict_asks_for_another_name(api, store, compartment):
    api.add('Project', name='demo', compartment_id='ocid1.compartment.other')
    prompter = ScriptedPrompter('demo2')

    DevOpsDeployer(api, store, prompter=prompter).deploy(compartment.id, 'dev', 'demo', ['app'])

    state = store.load()
    assert prompter.asked == ['demo']
    assert state.meta['project_name'] == 'demo2'
    assert api.resources[state.resource_id('project')].name == 'demo2'


def test_project_name_conflict_cancelled(api, store, compartment):
    api.add('Project', name='demo', compartment_id=compartment.id)

    with pytest.raises(DeployCancelled):
        DevOpsDeployer(api, store, prompter=ScriptedPrompter()).deploy(compartment.id, 'dev', 'demo')

    state = store.load()
    assert state.step('project').is_failed
    assert state.step('logGroup').is_not_attempted


def test_undeploy_removes_everything_but_shared_resources(api, store, deployer, compartment):
    deploy(deployer, compartment)

    report = DevOpsDeployer(api, store, store.load()).undeploy()

    assert report.ok
    assert not os.path.exists(store.path)
    assert sorted({r.kind for r in api.resources.values()}) == ['Compartment', 'LogGroup', 'Topic']


def test_undeploy_deletes_dependents_before_containers(api, store, deployer, compartment):
    deploy(deployer, compartment)

    DevOpsDeployer(api, store, store.load()).undeploy()

    names = api.call_names()
    assert names.index('delete_deploy_stage') < names.index('delete_deploy_pipeline')
    assert max(i for i, n in enumerate(names) if n == 'delete_build_pipeline_stage') < \
        names.index('delete_build_pipeline')
    assert names.index('delete_knowledge_base') < names.index('delete_project')
    assert names.index('delete_code_repository') < names.index('delete_project')


def test_undeploy_sweeps_entries_with_failed_creation(api, store, deployer, compartment):
    deploy(deployer, compartment)
    state = store.load()
    app = state.repository('app')
    orphan = app.resource_id('jvmContainerRepository')
    app.set_step('jvmContainerRepository', StepState.failed())

    report = DevOpsDeployer(api, store, state).undeploy()

    assert report.ok
    assert orphan not in api.resources
    assert api.calls_to('list_container_repositories')


def test_undeploy_keeps_state_when_deletion_fails(api, store, deployer, compartment):
    deploy(deployer, compartment)
    api.fail_on('delete_project')

    report = DevOpsDeployer(api, store, store.load()).undeploy()

    assert not report.ok
    assert os.path.exists(store.path)
    assert store.load().meta['project_name'] == 'demo'
    assert api.of_kind('Project')


def test_sweep_by_deploy_tag_only_touches_tagged(api):
    mine = api.add('DeployArtifact', freeform_tags={DEPLOY_ID_TAG: 'run-1'})
    other = api.add('DeployArtifact', freeform_tags={DEPLOY_ID_TAG: 'run-2'})
    untagged = api.add('DeployArtifact')

    report = sweep_by_deploy_tag(api, 'comp', 'run-1', 'deploy_artifacts')

    assert report.deleted == [mine.id]
    assert other.id in api.resources and untagged.id in api.resources


def test_sweep_unknown_kind():
    with pytest.raises(ValueError):
        sweep_by_deploy_tag(SimpleNamespace(), 'comp', 'tag', 'nonsense')


def test_console_prompter(monkeypatch):
    answers = iter(['  other  ', ''])
    monkeypatch.setattr('builtins.input', lambda prompt: next(answers))

    prompter = ConsolePrompter()

    assert prompter.select_project_name('demo') == 'other'
    assert prompter.select_project_name('demo') is None


def test_deploy_tags_are_unique_enough():
    assert new_deploy_tag().startswith('devops-deploy-')


def test_main_undeploy_without_state_exits_1(monkeypatch, tmp_path, api):
    monkeypatch.setattr(devops_deploy.oci_context, 'create_context', lambda *a, **k: api.ctx)
    monkeypatch.setattr(devops_deploy, 'DevOpsApi', lambda ctx: api)
    monkeypatch.setattr(sys, 'argv', ['devops_deploy.py', 'undeploy', '--state', str(tmp_path / 'none.json')])

    with pytest.raises(SystemExit) as excinfo:
        devops_deploy.main()

    assert excinfo.value.code == 1


def test_main_deploy_then_undeploy(monkeypatch, tmp_path, api, compartment):
    state_file = str(tmp_path / 'state.json')
    monkeypatch.setattr(devops_deploy.oci_context, 'create_context', lambda *a, **k: api.ctx)
    monkeypatch.setattr(devops_deploy, 'DevOpsApi', lambda ctx: api)

    monkeypatch.setattr(sys, 'argv', ['devops_deploy.py', 'deploy', '-c', compartment.id, '-p', 'demo',
                                      '-r', 'app', '--state', state_file])
    devops_deploy.main()
    assert os.path.exists(state_file)

    monkeypatch.setattr(sys, 'argv', ['devops_deploy.py', 'undeploy', '--state', state_file])
    with pytest.raises(SystemExit) as excinfo:
        devops_deploy.main()

    assert excinfo.value.code == 0
    assert not os.path.exists(state_file)
