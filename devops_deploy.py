#!/usr/bin/env python3
"""
DevOps Deploy - resumable creation and removal of a devops project

Creates a devops project with everything needed to build (and optionally
deploy to OKE) a set of source code repositories. Progress is written to a
state file after every step; running the same command again resumes an
interrupted deployment. ``undeploy`` removes what the state file records.

Usage:
    python3 devops_deploy.py deploy -c <compartment_ocid> -p <project_name> -r <repository> [-r ...]
    python3 devops_deploy.py undeploy [--state <file>]
"""

import argparse
import logging
import sys
from datetime import datetime, timezone

import oci

import oci_context
from deploy_state import FileStateStore, DeployState, DeployStepFailed, Step, StepRunner, ensure
from devops_utils import CODE_REPO_ID_TAG, DEPLOY_ID_TAG, PROJECT_ID_TAG, DevOpsApi, is_gone, tag_value
from pipeline_teardown import TeardownReport, delete_stages_by_deploy_tag

logger = logging.getLogger(__name__)

DEFAULT_STATE_FILE = '.devops_deploy.json'
DEVOPS_RESOURCES_DIR = '.devops'

OKE_DEPLOYMENT_MANIFEST = """\
apiVersion: apps/v1
kind: Deployment
metadata:
  name: {app_name}
spec:
  selector:
    matchLabels:
      app: {app_name}
  replicas: 1
  template:
    metadata:
      labels:
        app: {app_name}
    spec:
      containers:
      - name: {app_name}
        image: {image}
        imagePullPolicy: Always
        ports:
        - containerPort: 8080
      imagePullSecrets:
      - name: docker-registry-secret
---
apiVersion: v1
kind: Service
metadata:
  name: {app_name}
spec:
  selector:
    app: {app_name}
  ports:
  - port: 8080
    targetPort: 8080
  type: LoadBalancer
"""

# (state key prefix, pipeline title, artifact name suffix, artifact path suffix, build spec)
GENERIC_BUILDS = (
    ('devbuild', 'Build Fat JAR', 'dev_fatjar', '-dev.jar', 'devbuild_spec.yaml'),
    ('nibuild', 'Build Native Executable', 'native_executable', '-ni', 'nibuild_spec.yaml'),
)

# Per repository removal, most dependent resources first:
# (description, state keys, api delete method, tag sweep kind)
REPOSITORY_UNDEPLOY = (
    ('deploy to OKE stages', ('deployJvmToOkeStage',), 'delete_deploy_stage', 'deploy_stages'),
    ('deployment to OKE pipelines', ('oke_deployJvmPipeline',), 'delete_deploy_pipeline', 'deploy_pipelines'),
    ('build pipeline stages', ('docker_jvmbuildPipelineArtifactsStage', 'docker_jvmbuildPipelineBuildStage',
                               'nibuildPipelineArtifactsStage', 'nibuildPipelineBuildStage',
                               'devbuildPipelineArtifactsStage', 'devbuildPipelineBuildStage'),
     'delete_build_pipeline_stage', 'build_stages'),
    ('build pipelines', ('docker_jvmbuildPipeline', 'nibuildPipeline', 'devbuildPipeline'),
     'delete_build_pipeline', 'build_pipelines'),
    ('artifacts', ('oke_deployJvmConfigArtifact', 'docker_jvmbuildArtifact', 'nibuildArtifact', 'devbuildArtifact'),
     'delete_deploy_artifact', 'deploy_artifacts'),
    ('container repositories', ('jvmContainerRepository',), 'delete_container_repository', 'container_repositories'),
    ('source code repositories', ('codeRepository',), 'delete_code_repository', 'code_repositories'),
)

# Shared compartment resources, reused across projects and never removed
SHARED_STEPS = ('notificationTopic', 'logGroup')


class DeployCancelled(Exception):
    """The operator declined a choice the deployment needs"""


class ConsolePrompter:
    """Asks the operator on the terminal"""

    def select_project_name(self, current_name):
        answer = input(f"\nProject name '{current_name}' already exists. "
                       f"Enter another name (empty to cancel): ")
        return answer.strip() or None


def new_deploy_tag():
    return f"devops-deploy-{datetime.now(timezone.utc).strftime('%Y-%m-%dT%H:%M:%S.%fZ')}"


# ---------------------------------------------------------------- tag sweeps

def _tagged(resources, tag):
    return [r for r in resources if tag_value(r, DEPLOY_ID_TAG) == tag and not is_gone(r)]


def _delete_knowledge_base_with_audits(api, compartment_id, knowledge_base_id):
    for audit in api.list_vulnerability_audits(compartment_id, knowledge_base_id):
        api.delete_vulnerability_audit(audit.id)
    api.delete_knowledge_base(knowledge_base_id)


def _sweep_targets(api, compartment_id, kind, log_group_id=None):
    """(resources, delete function) for one resource kind in a compartment"""
    if kind == 'build_pipelines':
        return api.list_build_pipelines_in_compartment(compartment_id), api.delete_build_pipeline
    if kind == 'deploy_pipelines':
        return api.list_deploy_pipelines_in_compartment(compartment_id), api.delete_deploy_pipeline
    if kind == 'deploy_artifacts':
        return api.list_deploy_artifacts_in_compartment(compartment_id), api.delete_deploy_artifact
    if kind == 'container_repositories':
        return api.list_container_repositories(compartment_id), api.delete_container_repository
    if kind == 'code_repositories':
        return api.list_code_repositories_in_compartment(compartment_id), api.delete_code_repository
    if kind == 'deploy_environments':
        return api.list_deploy_environments_in_compartment(compartment_id), api.delete_deploy_environment
    if kind == 'artifact_repositories':
        return api.list_artifact_repositories(compartment_id), api.delete_artifact_repository
    if kind == 'knowledge_bases':
        return (api.list_knowledge_bases(compartment_id),
                lambda kb_id: _delete_knowledge_base_with_audits(api, compartment_id, kb_id))
    if kind == 'logs':
        if not log_group_id:
            return [], None
        return api.list_logs(log_group_id), lambda log_id: api.delete_log(log_id, log_group_id)
    if kind == 'projects':
        return api.list_all_projects(compartment_id), api.delete_project
    raise ValueError(f"Unknown resource kind: {kind}")


def sweep_by_deploy_tag(api, compartment_id, tag, kind, log_group_id=None):
    """
    Delete every resource of ``kind`` in the compartment created by the
    deployment run identified by ``tag``.

    Returns a TeardownReport with the deleted ids and per-resource errors.
    """
    report = TeardownReport(compartment_id, kind)
    if kind in ('build_stages', 'deploy_stages'):
        for stage_report in delete_stages_by_deploy_tag(api, compartment_id, tag,
                                                        'build' if kind == 'build_stages' else 'deploy'):
            report.deleted.extend(stage_report.deleted)
            report.errors.extend(stage_report.errors)
        return report

    resources, delete = _sweep_targets(api, compartment_id, kind, log_group_id)
    for resource in _tagged(resources, tag):
        name = getattr(resource, 'display_name', None) or getattr(resource, 'name', None) or resource.id
        try:
            logger.info(f"Deleting {kind} {name} by deploy tag")
            delete(resource.id)
            report.deleted.append(resource.id)
        except oci.exceptions.ServiceError as e:
            if e.status == 404:
                report.deleted.append(resource.id)
                continue
            logger.error(f"Error deleting {name}: {e.message}")
            report.add_error(resource.id, e.message)
        except Exception as e:
            logger.error(f"Error deleting {name}: {e}")
            report.add_error(resource.id, e)
    return report


class DevOpsDeployer:
    """Drives deploy and undeploy of one devops project from a persisted state"""

    def __init__(self, api, store, state=None, prompter=None):
        self.api = api
        self.store = store
        self.state = state if state is not None else DeployState()
        self.prompter = prompter or ConsolePrompter()

    # ---------------------------------------------------------------- helpers

    @property
    def meta(self):
        return self.state.meta

    @property
    def tag(self):
        return self.meta['tag']

    @property
    def compartment_id(self):
        return self.meta['compartment']['ocid']

    @property
    def compartment_name(self):
        return self.meta['compartment'].get('name') or self.compartment_id

    @property
    def project_name(self):
        return self.meta['project_name']

    @property
    def project_id(self):
        return self.state.resource_id('project')

    def _label(self, repository_name=None):
        parts = [self.compartment_name, self.meta.get('project_name') or '?']
        if repository_name:
            parts.append(repository_name)
        return '/'.join(parts)

    def _deploy_tags(self):
        return {DEPLOY_ID_TAG: self.tag}

    def _project_tags(self):
        return {DEPLOY_ID_TAG: self.tag, PROJECT_ID_TAG: self.project_id}

    def _repository_tags(self, scope):
        return {DEPLOY_ID_TAG: self.tag, CODE_REPO_ID_TAG: scope.resource_id('codeRepository')}

    @staticmethod
    def _exists(getter):
        def check(resource_id):
            resource = getter(resource_id)
            return resource is not None and not is_gone(resource)
        return check

    def _ensure(self, scope, key, getter, create, description):
        return ensure(scope, key, self._exists(getter), create, self.store.dump, description)

    # ------------------------------------------------------------------ deploy

    def deploy(self, compartment_id, compartment_name, project_name, repositories=(), oke_cluster_id=None):
        """
        Create (or finish creating) the devops project and its resources.

        Raises:
            DeployStepFailed: a step failed; the state records where to resume
            DeployCancelled: the operator cancelled a required choice
        """
        meta = self.meta
        if 'compartment' in meta and meta['compartment'].get('ocid') != compartment_id:
            logger.warning(f"[deploy] Resuming deployment into {meta['compartment'].get('name')}, "
                           f"ignoring compartment {compartment_id}")
        meta.setdefault('tag', new_deploy_tag())
        meta.setdefault('compartment', {'ocid': compartment_id, 'name': compartment_name})
        meta.setdefault('project_name', project_name)
        if oke_cluster_id:
            meta['oke_cluster'] = oke_cluster_id
        names = list(meta.get('repository_names') or [])
        for name in repositories:
            if name not in names:
                names.append(name)
        meta['repository_names'] = names
        self.store.dump(self.state)

        logger.info('=' * 80)
        logger.info(f"[deploy] Deploying devops project {self._label()} (tag {self.tag})")
        logger.info('=' * 80)

        steps = [
            Step('notificationTopic', self._ensure_notification_topic),
            Step('project', self._ensure_project),
            Step('logGroup', self._ensure_log_group),
            Step('projectLog', self._ensure_project_log),
            Step('artifactsRepository', self._ensure_artifacts_repository),
        ]
        if meta.get('oke_cluster'):
            steps.append(Step('okeClusterEnvironment', self._ensure_oke_environment))
        steps.append(Step('knowledgeBase', self._ensure_knowledge_base))
        for name in names:
            steps.extend(self._repository_steps(name))

        runner = StepRunner(self.state, self.store.dump, on_step=self._report_step, passthrough=(DeployCancelled,))
        try:
            results = runner.run(steps)
        except DeployStepFailed as e:
            logger.error(f"[deploy] Failed at step {e.step}: {e.cause}")
            raise
        except DeployCancelled:
            logger.info("[deploy] Deployment cancelled")
            raise
        logger.info(f"[deploy] Devops project {self._label()} successfully deployed")
        return results

    def _report_step(self, name, index, total):
        logger.debug(f"[deploy] Step {index + 1}/{total}: {name}")

    def _ensure_notification_topic(self):
        return self._ensure(
            self.state, 'notificationTopic', self.api.get_notification_topic,
            lambda: self.api.get_or_create_notification_topic(
                self.compartment_id, f"Notification topic for devops projects in {self.compartment_name}")[0],
            f"notification topic for {self.compartment_name}"
        )

    def _create_project(self):
        name = self.project_name
        while True:
            try:
                logger.info(f"[deploy] Creating devops project {self.compartment_name}/{name}")
                project = self.api.create_project(
                    name, self.compartment_id, self.state.resource_id('notificationTopic'),
                    description=f"Devops project {name} created by devops tooling",
                    tags=self._deploy_tags()
                )
                return project.id
            except oci.exceptions.ServiceError as e:
                if 'project name already exists' not in (e.message or '').lower():
                    raise
                logger.warning(f"[deploy] Project name '{name}' already exists in the tenancy")
                new_name = self.prompter.select_project_name(name)
                if not new_name:
                    raise DeployCancelled(f"No project name selected instead of '{name}'")
                name = new_name
                self.meta['project_name'] = name
                self.store.dump(self.state)

    def _ensure_project(self):
        return self._ensure(self.state, 'project', self.api.get_project, self._create_project,
                            f"devops project {self._label()}")

    def _ensure_log_group(self):
        return self._ensure(
            self.state, 'logGroup', self.api.get_log_group,
            lambda: self.api.get_or_create_default_log_group(
                self.compartment_id, f"Default log group for {self.compartment_name}")[0],
            f"log group for {self.compartment_name}"
        )

    def _ensure_project_log(self):
        log_group_id = self.state.resource_id('logGroup')

        def create():
            request_id = self.api.create_project_log(
                self.compartment_id, log_group_id, self.project_id,
                f"{self.project_name}Log", tags=self._deploy_tags()
            )
            return self.api.wait_for_logging_work_request(f"Log for project {self.project_name}", request_id)

        return self._ensure(self.state, 'projectLog', lambda log_id: self.api.get_log(log_id, log_group_id),
                            create, f"project log for {self._label()}")

    def _ensure_artifacts_repository(self):
        return self._ensure(
            self.state, 'artifactsRepository', self.api.get_artifact_repository,
            lambda: self.api.create_artifact_repository(
                self.compartment_id, self.project_name, tags=self._project_tags()).id,
            f"artifact repository for {self._label()}"
        )

    def _ensure_oke_environment(self):
        return self._ensure(
            self.state, 'okeClusterEnvironment', self.api.get_deploy_environment,
            lambda: self.api.create_oke_deploy_environment(
                self.project_id, self.project_name, self.meta['oke_cluster'], tags=self._deploy_tags()).id,
            f"OKE cluster environment for {self._label()}"
        )

    def _ensure_knowledge_base(self):
        def create():
            request_id = self.api.create_knowledge_base(self.compartment_id, self.project_name,
                                                        tags=self._project_tags())
            return self.api.wait_for_adm_work_request(f"Knowledge base for project {self.project_name}", request_id)

        return self._ensure(self.state, 'knowledgeBase', self.api.get_knowledge_base, create,
                            f"ADM knowledge base for {self._label()}")

    # ------------------------------------------------------ per repository

    def _repository_steps(self, repository_name):
        scope = self.state.repository(repository_name)
        steps = [Step(f"{repository_name}/codeRepository",
                      lambda: self._ensure_code_repository(scope, repository_name))]
        for prefix, title, artifact_suffix, path_suffix, build_spec in GENERIC_BUILDS:
            artifact_name = f"{repository_name}_{artifact_suffix}"
            create_artifact = self._generic_artifact_factory(
                scope, repository_name, f"{repository_name}{path_suffix}", artifact_name, title)
            steps.extend(self._build_steps(scope, repository_name, prefix, title, artifact_name,
                                           build_spec, create_artifact))

        steps.append(Step(f"{repository_name}/jvmContainerRepository",
                          lambda: self._ensure_container_repository(scope, repository_name)))
        docker_artifact_name = f"{repository_name}_docker_jvm"
        steps.extend(self._build_steps(scope, repository_name, 'docker_jvmbuild', 'Build Docker Image',
                                       docker_artifact_name, 'docker_jvmbuild_spec.yaml',
                                       self._docker_artifact_factory(scope, repository_name, docker_artifact_name)))
        if self.meta.get('oke_cluster'):
            steps.extend(self._oke_deploy_steps(scope, repository_name))
        return steps

    def _ensure_code_repository(self, scope, repository_name):
        return self._ensure(
            scope, 'codeRepository', self.api.get_code_repository,
            lambda: self.api.create_code_repository(
                self.project_id, repository_name,
                description=f"Source code repository {repository_name}",
                tags=self._deploy_tags()).id,
            f"source code repository {self._label(repository_name)}"
        )

    def _generic_artifact_factory(self, scope, repository_name, artifact_path, artifact_name, title):
        def create():
            return self.api.create_generic_deploy_artifact(
                self.project_id, self.state.resource_id('artifactsRepository'), artifact_path, artifact_name,
                description=f"{title} artifact for devops project {self.project_name} & repository {repository_name}",
                tags=self._repository_tags(scope)
            ).id
        return create

    def _docker_artifact_factory(self, scope, repository_name, artifact_name):
        def create():
            container_repository = self.api.get_container_repository(scope.resource_id('jvmContainerRepository'))
            return self.api.create_docker_deploy_artifact(
                self.project_id, self.api.container_image_uri(container_repository), artifact_name,
                description=f"Docker image artifact for devops project {self.project_name} & repository {repository_name}",
                tags=self._repository_tags(scope)
            ).id
        return create

    def _build_steps(self, scope, repository_name, prefix, title, artifact_name, build_spec, create_artifact):
        """Artifact, build pipeline, build stage and deliver-artifacts stage of one build flavor."""
        api = self.api
        label = self._label(repository_name)
        artifact_key = f"{prefix}Artifact"
        pipeline_key = f"{prefix}Pipeline"
        build_stage_key = f"{pipeline_key}BuildStage"
        artifacts_stage_key = f"{pipeline_key}ArtifactsStage"

        def artifact():
            return self._ensure(scope, artifact_key, api.get_deploy_artifact, create_artifact,
                                f"{title.lower()} artifact for {label}")

        def pipeline():
            return self._ensure(
                scope, pipeline_key, api.get_build_pipeline,
                lambda: api.create_build_pipeline(
                    self.project_id, f"{repository_name}: {title}",
                    description=f"Build pipeline to {title.lower()} for devops project {self.project_name} "
                                f"& repository {repository_name}",
                    tags=self._repository_tags(scope)).id,
                f"build pipeline to {title.lower()} of {label}"
            )

        def create_build_stage():
            repository = api.get_code_repository(scope.resource_id('codeRepository'))
            return api.create_build_stage(
                scope.resource_id(pipeline_key), repository.id, repository_name, repository.http_url,
                f"{DEVOPS_RESOURCES_DIR}/{build_spec}", tags=self._deploy_tags()
            ).id

        def build_stage():
            return self._ensure(scope, build_stage_key, api.get_build_pipeline_stage, create_build_stage,
                                f"build stage of build pipeline to {title.lower()} of {label}")

        def artifacts_stage():
            return self._ensure(
                scope, artifacts_stage_key, api.get_build_pipeline_stage,
                lambda: api.create_deliver_artifact_stage(
                    scope.resource_id(pipeline_key), scope.resource_id(build_stage_key),
                    scope.resource_id(artifact_key), artifact_name, tags=self._deploy_tags()).id,
                f"artifacts stage of build pipeline to {title.lower()} of {label}"
            )

        return [
            Step(f"{repository_name}/{artifact_key}", artifact),
            Step(f"{repository_name}/{pipeline_key}", pipeline),
            Step(f"{repository_name}/{build_stage_key}", build_stage),
            Step(f"{repository_name}/{artifacts_stage_key}", artifacts_stage),
        ]

    def _ensure_container_repository(self, scope, repository_name):
        return self._ensure(
            scope, 'jvmContainerRepository', self.api.get_container_repository,
            lambda: self.api.create_container_repository(
                self.compartment_id, f"{self.project_name}-{repository_name}-jvm",
                tags=self._project_tags()).id,
            f"jvm container repository for {self._label(repository_name)}"
        )

    def _oke_deploy_steps(self, scope, repository_name):
        api = self.api
        label = self._label(repository_name)

        def create_manifest():
            container_repository = api.get_container_repository(scope.resource_id('jvmContainerRepository'))
            content = OKE_DEPLOYMENT_MANIFEST.format(
                app_name=repository_name.lower(), image=api.container_image_uri(container_repository))
            return api.create_manifest_deploy_artifact(
                self.project_id, content, f"{repository_name}_oke_deploy_jvm_configuration",
                description=f"OKE deployment configuration for devops project {self.project_name} "
                            f"& repository {repository_name}",
                tags=self._repository_tags(scope)
            ).id

        def manifest():
            return self._ensure(scope, 'oke_deployJvmConfigArtifact', api.get_deploy_artifact, create_manifest,
                                f"OKE jvm deployment configuration artifact for {label}")

        def pipeline():
            return self._ensure(
                scope, 'oke_deployJvmPipeline', api.get_deploy_pipeline,
                lambda: api.create_deploy_pipeline(
                    self.project_id, f"{repository_name}: Deploy Docker Image to OKE",
                    description=f"Deployment pipeline to deploy docker image to OKE for devops project "
                                f"{self.project_name} & repository {repository_name}",
                    tags=self._repository_tags(scope)).id,
                f"deployment to OKE pipeline of {label}"
            )

        def stage():
            return self._ensure(
                scope, 'deployJvmToOkeStage', api.get_deploy_stage,
                lambda: api.create_deploy_to_oke_stage(
                    'Deploy to OKE', scope.resource_id('oke_deployJvmPipeline'),
                    self.state.resource_id('okeClusterEnvironment'), scope.resource_id('oke_deployJvmConfigArtifact'),
                    tags=self._deploy_tags()).id,
                f"deploy to OKE stage of {label}"
            )

        return [
            Step(f"{repository_name}/oke_deployJvmConfigArtifact", manifest),
            Step(f"{repository_name}/oke_deployJvmPipeline", pipeline),
            Step(f"{repository_name}/deployJvmToOkeStage", stage),
        ]

    # ---------------------------------------------------------------- undeploy

    def _remove(self, scope, key, delete, description, report):
        """
        Delete the resource recorded under ``key``.

        Returns False when the recorded state cannot be trusted (failed
        creation or failed delete), so the caller falls back to a tag sweep.
        """
        step = scope.step(key)
        if step.is_not_attempted:
            return True
        trusted = True
        if step.is_succeeded:
            try:
                logger.info(f"[undeploy] Deleting {description}")
                delete(step.resource_id)
                report.deleted.append(step.resource_id)
            except oci.exceptions.ServiceError as e:
                if e.status == 404:
                    logger.info(f"[undeploy] {description} already deleted or not found")
                    report.deleted.append(step.resource_id)
                else:
                    logger.error(f"[undeploy] Error deleting {description}: {e.message}")
                    trusted = False
            except Exception as e:
                logger.error(f"[undeploy] Error deleting {description}: {e}")
                trusted = False
        else:
            trusted = False
        scope.clear_step(key)
        self.store.dump(self.state)
        return trusted

    def _sweep(self, kind, description, report, log_group_id=None):
        logger.info(f"[undeploy] Deleting {description} of {self._label()} by deploy tag")
        try:
            swept = sweep_by_deploy_tag(self.api, self.compartment_id, self.tag, kind, log_group_id)
        except Exception as e:
            logger.error(f"[undeploy] Error deleting {description} by deploy tag: {e}")
            report.add_error(kind, e)
            return
        report.deleted.extend(swept.deleted)
        report.errors.extend(swept.errors)

    def undeploy(self):
        """
        Remove everything the state records, most dependent resources first.

        Entries whose creation failed, or whose removal failed, are swept by
        deploy tag instead. The persisted state is cleared once the project
        is gone.

        Returns:
            TeardownReport for the project
        """
        report = TeardownReport(self.project_id, self.meta.get('project_name'))
        logger.info('=' * 80)
        logger.info(f"[undeploy] Undeploying devops project {self._label()}")
        logger.info('=' * 80)

        for description, keys, delete_method, sweep_kind in REPOSITORY_UNDEPLOY:
            delete = getattr(self.api, delete_method)
            to_check = False
            for repository_name, scope in list(self.state.repositories.items()):
                for key in keys:
                    if not self._remove(scope, key, delete, f"{key} of {self._label(repository_name)}", report):
                        to_check = True
            if to_check:
                self._sweep(sweep_kind, description, report)

        for repository_name, scope in list(self.state.repositories.items()):
            if scope.is_empty():
                del self.state.repositories[repository_name]
        self.store.dump(self.state)

        log_group_id = self.state.resource_id('logGroup')
        project_level = (
            ('knowledgeBase', 'ADM knowledge base',
             lambda kb_id: _delete_knowledge_base_with_audits(self.api, self.compartment_id, kb_id),
             'knowledge_bases'),
            ('okeClusterEnvironment', 'OKE cluster environment', self.api.delete_deploy_environment,
             'deploy_environments'),
            ('artifactsRepository', 'artifact repository', self.api.delete_artifact_repository,
             'artifact_repositories'),
            ('projectLog', 'project log', lambda log_id: self.api.delete_log(log_id, log_group_id), 'logs'),
            ('project', 'devops project', self.api.delete_project, 'projects'),
        )
        for key, description, delete, sweep_kind in project_level:
            if not self._remove(self.state, key, delete, f"{description} for {self._label()}", report):
                self._sweep(sweep_kind, description, report, log_group_id)

        if report.ok:
            for key in SHARED_STEPS:
                self.state.clear_step(key)
            self.store.dump(None)
            logger.info(f"[undeploy] Devops project {self._label()} successfully deleted")
        else:
            self.store.dump(self.state)
            logger.warning(f"[undeploy] Finished with {len(report.errors)} errors:")
            for resource_id, error in report.errors:
                logger.warning(f"  - {resource_id}: {error}")
        return report


def main():
    parser = argparse.ArgumentParser(
        description='DevOps Deploy - create or remove a devops project with build and deployment pipelines'
    )
    parser.add_argument('action', choices=['deploy', 'undeploy'],
                        help='Create (or resume creating) the project, or remove it')
    parser.add_argument('-c', '--compartment',
                        help='Compartment OCID to deploy into (deploy only)')
    parser.add_argument('-p', '--project-name',
                        help='Devops project name (deploy only)')
    parser.add_argument('-r', '--repository', action='append', default=[],
                        help='Source code repository name, repeatable (deploy only)')
    parser.add_argument('--oke-cluster',
                        help='OKE cluster OCID to create deployment pipelines for')
    parser.add_argument('--state', default=DEFAULT_STATE_FILE,
                        help=f'Deployment state file (default: {DEFAULT_STATE_FILE})')
    parser.add_argument('-cp', '--config-profile', default='DEFAULT',
                        help='Config profile to use (default: DEFAULT)')
    parser.add_argument('-cf', '--config-file', default=None,
                        help='Config file path (default: ~/.oci/config)')
    parser.add_argument('-debug', '--debug', action='store_true',
                        help='Enable debug logging')

    args = parser.parse_args()

    logging.basicConfig(
        format='%(asctime)s [%(levelname)s] %(message)s',
        level=logging.INFO
    )
    if args.debug:
        logging.getLogger().setLevel(logging.DEBUG)

    store = FileStateStore(args.state)
    state = store.load()

    profile = (state.meta.get('profile') if state else None) or args.config_profile
    ctx = oci_context.create_context(profile, args.config_file)
    if ctx is None:
        sys.exit(1)
    api = DevOpsApi(ctx)

    if args.action == 'undeploy':
        if state is None:
            logger.error(f"No deployment state found in {store.path}")
            sys.exit(1)
        report = DevOpsDeployer(api, store, state).undeploy()
        sys.exit(0 if report.ok else 1)

    if state is None:
        if not args.compartment or not args.project_name:
            parser.error('deploy needs --compartment and --project-name')
        state = DeployState(meta={'profile': profile})
    compartment_id = args.compartment or state.meta['compartment']['ocid']
    compartment_name = api.get_compartment(compartment_id).name
    deployer = DevOpsDeployer(api, store, state)
    try:
        deployer.deploy(compartment_id, compartment_name, args.project_name or state.meta.get('project_name'),
                        args.repository, args.oke_cluster)
    except DeployCancelled:
        sys.exit(1)
    except DeployStepFailed:
        logger.error(f"Deployment state kept in {store.path}, run the same command again to resume")
        sys.exit(1)


if __name__ == '__main__':
    main()
