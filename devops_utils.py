"""
OCI DevOps resource operations

Thin wrappers around the OCI SDK used by the deploy, undeploy and cleanup
workflows. Every call builds its client from the OciContext it was given,
list calls follow pagination to the end, and operations that return a work
request can optionally wait for it to finish.
"""

import base64
import logging
import time

import oci

import work_requests

logger = logging.getLogger(__name__)

DEPLOY_ID_TAG = 'devops_tooling_deployID'
PROJECT_ID_TAG = 'devops_tooling_projectOCID'
CODE_REPO_ID_TAG = 'devops_tooling_codeRepoID'

DEFAULT_LOG_GROUP = 'Default_Group'
DEFAULT_NOTIFICATION_TOPIC = 'NotificationTopic'
BUILD_IMAGE = 'OL7_X86_64_STANDARD_10'

GONE_STATES = ('DELETING', 'DELETED')


def is_gone(resource):
    return getattr(resource, 'lifecycle_state', None) in GONE_STATES


def tag_value(resource, tag):
    return (getattr(resource, 'freeform_tags', None) or {}).get(tag)


def work_request_id(response):
    headers = getattr(response, 'headers', None) or {}
    return headers.get('opc-work-request-id')


def _list_all(list_method, *args, **kwargs):
    """Call a paginated list operation until the last page"""
    results = []
    page = None
    while True:
        if page:
            kwargs['page'] = page
        response = list_method(*args, **kwargs)
        items = getattr(response.data, 'items', response.data)
        if items:
            results.extend(items)
        if not getattr(response, 'has_next_page', False):
            break
        page = response.next_page
    return results


class DevOpsApi:
    """OCI operations for devops projects and everything they own"""

    def __init__(self, ctx, poll_interval=work_requests.DEFAULT_POLL_INTERVAL,
                 max_wait=work_requests.DEFAULT_MAX_WAIT, sleep=time.sleep):
        self.ctx = ctx
        self.poll_interval = poll_interval
        self.max_wait = max_wait
        self.sleep = sleep

    # ------------------------------------------------------------------ clients

    def _devops(self):
        return self.ctx.client(oci.devops.DevopsClient)

    def _artifacts(self):
        return self.ctx.client(oci.artifacts.ArtifactsClient)

    def _adm(self):
        return self.ctx.client(oci.adm.ApplicationDependencyManagementClient)

    def _logging(self):
        return self.ctx.client(oci.logging.LoggingManagementClient)

    def _ons(self):
        return self.ctx.client(oci.ons.NotificationControlPlaneClient)

    def _identity(self):
        return self.ctx.client(oci.identity.IdentityClient)

    def _wait(self, client, description, response, wait=True):
        request_id = work_request_id(response)
        if not wait or not request_id:
            return None
        return work_requests.await_completion(
            client.get_work_request, request_id, description,
            poll_interval=self.poll_interval, max_wait=self.max_wait, sleep=self.sleep
        )

    def wait_for_adm_work_request(self, description, request_id):
        return work_requests.await_completion(
            self._adm().get_work_request, request_id, description,
            poll_interval=self.poll_interval, max_wait=self.max_wait, sleep=self.sleep
        )

    def wait_for_logging_work_request(self, description, request_id):
        return work_requests.await_completion(
            self._logging().get_work_request, request_id, description,
            poll_interval=self.poll_interval, max_wait=self.max_wait, sleep=self.sleep
        )

    # ----------------------------------------------------------------- identity

    def get_tenancy(self, tenancy_id=None):
        return self._identity().get_tenancy(tenancy_id or self.ctx.tenancy_id).data

    def find_compartment(self, parent_id, name):
        """Return the id of the accessible child compartment with this name, or None."""
        compartments = _list_all(
            self._identity().list_compartments, parent_id,
            access_level='ACCESSIBLE', name=name
        )
        for compartment in compartments:
            if not is_gone(compartment):
                return compartment.id
        return None

    def get_compartment(self, compartment_id):
        return self._identity().get_compartment(compartment_id).data

    def list_compartments(self, parent_id):
        return _list_all(
            self._identity().list_compartments, parent_id,
            access_level='ACCESSIBLE', compartment_id_in_subtree=True
        )

    # ----------------------------------------------------------------- projects

    def list_projects(self, compartment_id):
        return _list_all(self._devops().list_projects, compartment_id=compartment_id,
                         lifecycle_state='ACTIVE', limit=1000)

    def list_all_projects(self, compartment_id):
        return _list_all(self._devops().list_projects, compartment_id=compartment_id, limit=1000)

    def get_project(self, project_id):
        return self._devops().get_project(project_id).data

    def create_project(self, name, compartment_id, notification_topic_id, description=None, tags=None):
        details = oci.devops.models.CreateProjectDetails(
            name=name,
            description=description,
            notification_config=oci.devops.models.NotificationConfig(topic_id=notification_topic_id),
            compartment_id=compartment_id,
            freeform_tags=tags
        )
        return self._devops().create_project(details).data

    def delete_project(self, project_id, wait=True):
        client = self._devops()
        self._wait(client, "Deleting project", client.delete_project(project_id), wait)

    # --------------------------------------------------------- code repositories

    def list_code_repositories(self, project_id):
        return _list_all(self._devops().list_repositories, project_id=project_id, limit=1000)

    def list_code_repositories_in_compartment(self, compartment_id):
        return _list_all(self._devops().list_repositories, compartment_id=compartment_id, limit=1000)

    def get_code_repository(self, repository_id):
        return self._devops().get_repository(repository_id).data

    def create_code_repository(self, project_id, name, default_branch='master', description=None, tags=None):
        details = oci.devops.models.CreateRepositoryDetails(
            name=name,
            description=description,
            project_id=project_id,
            default_branch=default_branch,
            repository_type='HOSTED',
            freeform_tags=tags
        )
        client = self._devops()
        response = client.create_repository(details)
        self._wait(client, f"Code repository {name}", response)
        return response.data

    def delete_code_repository(self, repository_id, wait=True):
        client = self._devops()
        self._wait(client, "Deleting repository", client.delete_repository(repository_id), wait)

    # ---------------------------------------------------------- build pipelines

    def list_build_pipelines(self, project_id):
        return _list_all(self._devops().list_build_pipelines, project_id=project_id, limit=1000)

    def list_build_pipelines_in_compartment(self, compartment_id):
        return _list_all(self._devops().list_build_pipelines, compartment_id=compartment_id, limit=1000)

    def get_build_pipeline(self, pipeline_id):
        return self._devops().get_build_pipeline(pipeline_id).data

    def create_build_pipeline(self, project_id, display_name, description=None, tags=None):
        details = oci.devops.models.CreateBuildPipelineDetails(
            display_name=display_name,
            description=description,
            project_id=project_id,
            build_pipeline_parameters=oci.devops.models.BuildPipelineParameterCollection(items=[]),
            freeform_tags=tags
        )
        return self._devops().create_build_pipeline(details).data

    def delete_build_pipeline(self, pipeline_id, wait=True):
        client = self._devops()
        self._wait(client, "Deleting build pipeline", client.delete_build_pipeline(pipeline_id), wait)

    def list_build_pipeline_stages(self, pipeline_id):
        return _list_all(self._devops().list_build_pipeline_stages, build_pipeline_id=pipeline_id, limit=1000)

    def list_build_pipeline_stages_in_compartment(self, compartment_id):
        return _list_all(self._devops().list_build_pipeline_stages, compartment_id=compartment_id, limit=1000)

    def get_build_pipeline_stage(self, stage_id):
        return self._devops().get_build_pipeline_stage(stage_id).data

    def create_build_stage(self, pipeline_id, repository_id, repository_name, repository_url,
                           build_spec_file, tags=None):
        models = oci.devops.models
        details = models.CreateBuildStageDetails(
            display_name='Build',
            description='Build stage generated by devops tooling',
            build_pipeline_id=pipeline_id,
            build_pipeline_stage_predecessor_collection=models.BuildPipelineStagePredecessorCollection(
                items=[models.BuildPipelineStagePredecessor(id=pipeline_id)]
            ),
            build_spec_file=build_spec_file,
            image=BUILD_IMAGE,
            build_source_collection=models.BuildSourceCollection(items=[
                models.DevopsCodeRepositoryBuildSource(
                    name=repository_name,
                    repository_url=repository_url,
                    repository_id=repository_id,
                    branch='master'
                )
            ]),
            freeform_tags=tags
        )
        return self._devops().create_build_pipeline_stage(details).data

    def create_deliver_artifact_stage(self, pipeline_id, build_stage_id, artifact_id, artifact_name, tags=None):
        models = oci.devops.models
        details = models.CreateDeliverArtifactStageDetails(
            display_name='Artifacts',
            description='Artifacts stage generated by devops tooling',
            build_pipeline_id=pipeline_id,
            build_pipeline_stage_predecessor_collection=models.BuildPipelineStagePredecessorCollection(
                items=[models.BuildPipelineStagePredecessor(id=build_stage_id)]
            ),
            deliver_artifact_collection=models.DeliverArtifactCollection(items=[
                models.DeliverArtifact(artifact_name=artifact_name, artifact_id=artifact_id)
            ]),
            freeform_tags=tags
        )
        return self._devops().create_build_pipeline_stage(details).data

    def delete_build_pipeline_stage(self, stage_id, wait=True):
        client = self._devops()
        self._wait(client, "Deleting build pipeline stage", client.delete_build_pipeline_stage(stage_id), wait)

    # --------------------------------------------------------- deploy pipelines

    def list_deploy_pipelines(self, project_id):
        return _list_all(self._devops().list_deploy_pipelines, project_id=project_id, limit=1000)

    def list_deploy_pipelines_in_compartment(self, compartment_id):
        return _list_all(self._devops().list_deploy_pipelines, compartment_id=compartment_id, limit=1000)

    def get_deploy_pipeline(self, pipeline_id):
        return self._devops().get_deploy_pipeline(pipeline_id).data

    def create_deploy_pipeline(self, project_id, display_name, description=None, tags=None):
        details = oci.devops.models.CreateDeployPipelineDetails(
            display_name=display_name,
            description=description,
            project_id=project_id,
            freeform_tags=tags
        )
        return self._devops().create_deploy_pipeline(details).data

    def delete_deploy_pipeline(self, pipeline_id, wait=True):
        client = self._devops()
        self._wait(client, "Deleting deploy pipeline", client.delete_deploy_pipeline(pipeline_id), wait)

    def list_deploy_stages(self, pipeline_id):
        return _list_all(self._devops().list_deploy_stages, deploy_pipeline_id=pipeline_id, limit=1000)

    def list_deploy_stages_in_compartment(self, compartment_id):
        return _list_all(self._devops().list_deploy_stages, compartment_id=compartment_id, limit=1000)

    def get_deploy_stage(self, stage_id):
        return self._devops().get_deploy_stage(stage_id).data

    def create_deploy_to_oke_stage(self, display_name, pipeline_id, environment_id, manifest_artifact_id,
                                   predecessor_id=None, tags=None):
        models = oci.devops.models
        details = models.CreateOkeDeployStageDetails(
            display_name=display_name,
            description='Deployment stage generated by devops tooling',
            deploy_pipeline_id=pipeline_id,
            deploy_stage_predecessor_collection=models.DeployStagePredecessorCollection(
                items=[models.DeployStagePredecessor(id=predecessor_id or pipeline_id)]
            ),
            kubernetes_manifest_deploy_artifact_ids=[manifest_artifact_id],
            oke_cluster_deploy_environment_id=environment_id,
            freeform_tags=tags
        )
        return self._devops().create_deploy_stage(details).data

    def delete_deploy_stage(self, stage_id, wait=True):
        client = self._devops()
        self._wait(client, "Deleting deploy stage", client.delete_deploy_stage(stage_id), wait)

    # --------------------------------------------------------- deploy artifacts

    def list_deploy_artifacts(self, project_id):
        return _list_all(self._devops().list_deploy_artifacts, project_id=project_id, limit=1000)

    def list_deploy_artifacts_in_compartment(self, compartment_id):
        return _list_all(self._devops().list_deploy_artifacts, compartment_id=compartment_id, limit=1000)

    def get_deploy_artifact(self, artifact_id):
        return self._devops().get_deploy_artifact(artifact_id).data

    def _create_deploy_artifact(self, project_id, display_name, description, artifact_type, source, tags):
        details = oci.devops.models.CreateDeployArtifactDetails(
            display_name=display_name,
            description=description,
            deploy_artifact_type=artifact_type,
            deploy_artifact_source=source,
            argument_substitution_mode='SUBSTITUTE_PLACEHOLDERS',
            project_id=project_id,
            freeform_tags=tags
        )
        return self._devops().create_deploy_artifact(details).data

    def create_generic_deploy_artifact(self, project_id, repository_id, artifact_path, display_name,
                                       description=None, tags=None):
        source = oci.devops.models.GenericDeployArtifactSource(
            repository_id=repository_id,
            deploy_artifact_path=artifact_path,
            deploy_artifact_version='dev'
        )
        return self._create_deploy_artifact(project_id, display_name, description, 'GENERIC_FILE', source, tags)

    def create_docker_deploy_artifact(self, project_id, image_uri, display_name, description=None, tags=None):
        source = oci.devops.models.OcirDeployArtifactSource(image_uri=image_uri)
        return self._create_deploy_artifact(project_id, display_name, description, 'DOCKER_IMAGE', source, tags)

    def create_manifest_deploy_artifact(self, project_id, content, display_name, description=None, tags=None):
        source = oci.devops.models.InlineDeployArtifactSource(
            base64_encoded_content=base64.b64encode(content.encode('utf-8')).decode('ascii')
        )
        return self._create_deploy_artifact(project_id, display_name, description, 'KUBERNETES_MANIFEST', source, tags)

    def delete_deploy_artifact(self, artifact_id, wait=True):
        client = self._devops()
        self._wait(client, "Deleting deploy artifact", client.delete_deploy_artifact(artifact_id), wait)

    # ------------------------------------------------------ deploy environments

    def list_deploy_environments(self, project_id):
        return _list_all(self._devops().list_deploy_environments, project_id=project_id, limit=1000)

    def list_deploy_environments_in_compartment(self, compartment_id):
        return _list_all(self._devops().list_deploy_environments, compartment_id=compartment_id, limit=1000)

    def get_deploy_environment(self, environment_id):
        return self._devops().get_deploy_environment(environment_id).data

    def create_oke_deploy_environment(self, project_id, project_name, cluster_id, tags=None):
        details = oci.devops.models.CreateOkeClusterDeployEnvironmentDetails(
            display_name=f"{project_name}OkeDeployEnvironment",
            description=f"OKE cluster environment for devops project {project_name}",
            project_id=project_id,
            cluster_id=cluster_id,
            freeform_tags=tags
        )
        return self._devops().create_deploy_environment(details).data

    def delete_deploy_environment(self, environment_id, wait=True):
        client = self._devops()
        self._wait(client, "Deleting deploy environment", client.delete_deploy_environment(environment_id), wait)

    # ------------------------------------------- artifact & container registries

    def list_artifact_repositories(self, compartment_id):
        return _list_all(self._artifacts().list_repositories, compartment_id, limit=1000)

    def get_artifact_repository(self, repository_id):
        return self._artifacts().get_repository(repository_id).data

    def create_artifact_repository(self, compartment_id, project_name, tags=None):
        details = oci.artifacts.models.CreateGenericRepositoryDetails(
            display_name=f"{project_name}ArtifactRepository",
            compartment_id=compartment_id,
            description=f"Artifact repository for devops project {project_name}",
            is_immutable=False,
            freeform_tags=tags
        )
        return self._artifacts().create_repository(details).data

    def delete_artifact_repository(self, repository_id, wait=True):
        # Synchronous in the artifacts service
        self._artifacts().delete_repository(repository_id)

    def list_container_repositories(self, compartment_id):
        return _list_all(self._artifacts().list_container_repositories, compartment_id, limit=1000)

    def get_container_repository(self, repository_id):
        return self._artifacts().get_container_repository(repository_id).data

    def create_container_repository(self, compartment_id, name, tags=None):
        details = oci.artifacts.models.CreateContainerRepositoryDetails(
            compartment_id=compartment_id,
            display_name=name.lower(),
            is_immutable=False,
            is_public=False,
            freeform_tags=tags
        )
        return self._artifacts().create_container_repository(details).data

    def container_image_uri(self, repository, tag='${DOCKER_TAG}'):
        return f"{self.ctx.region}.ocir.io/{repository.namespace}/{repository.display_name}:{tag}"

    def delete_container_repository(self, repository_id, wait=True):
        self._artifacts().delete_container_repository(repository_id)

    def list_container_images(self, compartment_id):
        return _list_all(self._artifacts().list_container_images, compartment_id, limit=1000)

    def delete_container_image(self, image_id):
        self._artifacts().delete_container_image(image_id)

    # ------------------------------------------------------- ADM knowledge bases

    def list_knowledge_bases(self, compartment_id):
        return _list_all(self._adm().list_knowledge_bases, compartment_id=compartment_id,
                         lifecycle_state='ACTIVE', limit=1000)

    def get_knowledge_base(self, knowledge_base_id):
        return self._adm().get_knowledge_base(knowledge_base_id).data

    def create_knowledge_base(self, compartment_id, project_name, tags=None):
        """Request a knowledge base; returns the work request id to wait on."""
        details = oci.adm.models.CreateKnowledgeBaseDetails(
            compartment_id=compartment_id,
            display_name=f"{project_name}Audits",
            freeform_tags=tags
        )
        return work_request_id(self._adm().create_knowledge_base(details))

    def delete_knowledge_base(self, knowledge_base_id, wait=True):
        client = self._adm()
        self._wait(client, "Deleting knowledge base", client.delete_knowledge_base(knowledge_base_id), wait)

    def list_vulnerability_audits(self, compartment_id, knowledge_base_id):
        return _list_all(self._adm().list_vulnerability_audits, compartment_id=compartment_id,
                         knowledge_base_id=knowledge_base_id, limit=1000)

    def delete_vulnerability_audit(self, audit_id, wait=True):
        self._adm().delete_vulnerability_audit(audit_id)

    # ------------------------------------------------------------------ logging

    def list_log_groups(self, compartment_id, name=None):
        kwargs = {'display_name': name} if name else {}
        return _list_all(self._logging().list_log_groups, compartment_id, limit=1000, **kwargs)

    def get_or_create_default_log_group(self, compartment_id, description=None):
        """Return ``(log_group_id, created)`` for the shared default log group."""
        groups = self.list_log_groups(compartment_id, DEFAULT_LOG_GROUP)
        if groups:
            return groups[0].id, False
        client = self._logging()
        details = oci.logging.models.CreateLogGroupDetails(
            compartment_id=compartment_id,
            display_name=DEFAULT_LOG_GROUP,
            description=description
        )
        self._wait(client, f"Log group {DEFAULT_LOG_GROUP}", client.create_log_group(details))
        groups = self.list_log_groups(compartment_id, DEFAULT_LOG_GROUP)
        if not groups:
            raise RuntimeError(f"Log group {DEFAULT_LOG_GROUP} not found after creation")
        return groups[0].id, True

    def get_log_group(self, log_group_id):
        return self._logging().get_log_group(log_group_id).data

    def list_logs(self, log_group_id):
        return _list_all(self._logging().list_logs, log_group_id, limit=1000)

    def get_log(self, log_id, log_group_id):
        return self._logging().get_log(log_group_id, log_id).data

    def create_project_log(self, compartment_id, log_group_id, project_id, log_name, tags=None):
        """Request a devops service log for the project; returns the work request id."""
        models = oci.logging.models
        details = models.CreateLogDetails(
            display_name=log_name,
            log_type='SERVICE',
            is_enabled=True,
            configuration=models.Configuration(
                compartment_id=compartment_id,
                source=models.OciService(
                    service='devops',
                    resource=project_id,
                    category='all',
                    parameters={}
                ),
                archiving=models.Archiving(is_enabled=False)
            ),
            retention_duration=30,
            freeform_tags=tags
        )
        return work_request_id(self._logging().create_log(log_group_id, details))

    def delete_log(self, log_id, log_group_id, wait=True):
        client = self._logging()
        self._wait(client, "Deleting project log", client.delete_log(log_group_id, log_id), wait)

    # ------------------------------------------------------------ notifications

    def list_notification_topics(self, compartment_id):
        return _list_all(self._ons().list_topics, compartment_id, limit=50)

    def get_notification_topic(self, topic_id):
        return self._ons().get_topic(topic_id).data

    def get_or_create_notification_topic(self, compartment_id, description=None):
        """Return ``(topic_id, created)``, reusing any topic in the compartment."""
        topics = self.list_notification_topics(compartment_id)
        if topics:
            return topics[0].topic_id, False
        # Topic names must be unique across the tenancy
        details = oci.ons.models.CreateTopicDetails(
            name=f"{DEFAULT_NOTIFICATION_TOPIC}-{int(time.time() * 1000)}",
            compartment_id=compartment_id,
            description=description
        )
        topic = self._ons().create_topic(details).data
        return topic.topic_id, True
