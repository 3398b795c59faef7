#!/usr/bin/env python3
"""
DevOps Cleaner - compartment cleanup of devops projects

Removes devops projects and everything they own from a compartment:
1. Container images and repositories named after the selected projects
2. Per project (projects in parallel): pipeline stages in dependency order,
   pipelines, deploy artifacts, container and code repositories, logs,
   vulnerability audits and knowledge bases, deploy environments, artifact
   repositories and finally the project itself
3. Remaining knowledge bases matching the selection

A resource that cannot be deleted is logged and recorded; the sweep goes on.

Usage:
    python3 devops_cleaner.py <compartment/path> [projectNameRegexp]
"""

import argparse
import logging
import re
import sys
import threading
import time
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor, as_completed

import oci

import oci_context
from devops_utils import DEPLOY_ID_TAG, PROJECT_ID_TAG, DevOpsApi, is_gone, tag_value
from pipeline_teardown import teardown_build_pipeline, teardown_deploy_pipeline

logger = logging.getLogger(__name__)

EXIT_TENANCY_NOT_FOUND = 1
EXIT_COMPARTMENT_NOT_FOUND = 2
# argparse exits 2 on bad arguments, which is taken by the compartment lookup
EXIT_USAGE = 1


class TenancyNotFound(Exception):
    def __init__(self, tenancy_id):
        super().__init__(f"No tenancy found for OCID {tenancy_id}")
        self.tenancy_id = tenancy_id


class CompartmentNotFound(Exception):
    def __init__(self, path, tenancy_id):
        super().__init__(f"No compartment {path} found in tenancy {tenancy_id}")
        self.path = path
        self.tenancy_id = tenancy_id


class CleanupReport:
    """Everything one cleanup run deleted, and everything it could not"""

    def __init__(self, compartment):
        self.compartment = compartment
        self.compartment_id = None
        self.projects = []
        self.deleted = []
        self.errors = []

    @property
    def ok(self):
        return not self.errors

    def add_error(self, kind, resource_id, error):
        self.errors.append((kind, resource_id, str(error)))

    def __repr__(self):
        return (f"CleanupReport({self.compartment}, deleted={len(self.deleted)}, "
                f"errors={len(self.errors)})")


def compile_name_filter(pattern):
    """Case-insensitive project name filter; no pattern matches every name."""
    return re.compile(pattern or '', re.IGNORECASE)


def container_repository_matches(repository, project):
    """Repository named '<project>', '<project>-...' or '<project> -...'."""
    name = repository.display_name or ''
    if not name.startswith(project.name):
        return False
    rest = name[len(project.name):]
    return rest == '' or rest.startswith('-') or rest.startswith(' -')


class DevOpsCleaner:
    """Removes devops projects and their resources from one compartment"""

    def __init__(self, api, compartment_path=None, name_regexp=None, compartment_id=None, max_workers=10):
        if not compartment_path and not compartment_id:
            raise ValueError("compartment_path or compartment_id is required")
        self.api = api
        self.compartment_path = compartment_path
        self.compartment_id = compartment_id
        self.name_regexp = name_regexp
        self.name_filter = compile_name_filter(name_regexp)
        self.max_workers = max_workers
        self.project_names = []
        self.swept_knowledge_bases = set()
        self.report = CleanupReport(compartment_path or compartment_id)

        # Track deletion stats
        self.deleted_count = defaultdict(int)
        self.failed_count = defaultdict(int)
        self._lock = threading.Lock()

        # Progress tracking for real-time feedback
        self.progress = {
            'total_projects': 0,
            'processed': 0,
            'deleted': 0,
            'failed': 0,
            'current_project': '',
            'status': 'idle',  # idle, resolving, images, projects, knowledge_bases, complete, error
            'resources_status': {},  # {resource_id: {name, type, status, error}}
            'phase': '',
            'processed_ids': set()
        }

    # ------------------------------------------------------------- bookkeeping

    def _update_resource_status(self, resource_id, name, resource_type, status, error=None):
        """Update progress for a specific resource"""
        with self._lock:
            prev_status = self.progress['resources_status'].get(resource_id, {}).get('status')
            self.progress['resources_status'][resource_id] = {
                'name': name,
                'type': resource_type,
                'status': status,  # 'deleting', 'deleted', 'failed'
                'error': error
            }
            if resource_id not in self.progress['processed_ids']:
                self.progress['processed_ids'].add(resource_id)
                self.progress['processed'] += 1
            if status == 'deleted' and prev_status != 'deleted':
                self.progress['deleted'] += 1
                self.deleted_count[resource_type] += 1
                self.report.deleted.append((resource_type, resource_id))
            elif status == 'failed' and prev_status != 'failed':
                self.progress['failed'] += 1
                self.failed_count[resource_type] += 1
                self.report.add_error(resource_type, resource_id, error)

    def _delete(self, resource_type, resource_id, name, delete):
        """Delete one resource; failures are recorded, never raised."""
        name = name or resource_id
        self._update_resource_status(resource_id, name, resource_type, 'deleting')
        logger.info(f"Deleting {resource_type}: {name} (ID: {resource_id})")
        try:
            delete(resource_id)
        except oci.exceptions.ServiceError as e:
            if e.status == 404:
                logger.info(f"{resource_type} already deleted or not found: {name}")
                self._update_resource_status(resource_id, name, resource_type, 'deleted')
                return True
            logger.error(f"Error deleting {resource_type} {name}: {e.message}")
            self._update_resource_status(resource_id, name, resource_type, 'failed', e.message)
            return False
        except Exception as e:
            logger.error(f"Error deleting {resource_type} {name}: {e}")
            self._update_resource_status(resource_id, name, resource_type, 'failed', str(e))
            return False
        logger.info(f"✓ Deleted {resource_type}: {name}")
        self._update_resource_status(resource_id, name, resource_type, 'deleted')
        return True

    def _list(self, resource_type, list_call, *args):
        try:
            return [r for r in list_call(*args) if not is_gone(r)]
        except Exception as e:
            logger.error(f"Error listing {resource_type}: {e}")
            with self._lock:
                self.report.add_error(resource_type, args[0] if args else None, e)
            return []

    def _record_teardown(self, teardown, resource_type):
        for stage_id in teardown.deleted:
            self._update_resource_status(stage_id, stage_id, resource_type, 'deleted')
        for resource_id, error in teardown.errors:
            self._update_resource_status(resource_id, resource_id, resource_type, 'failed', error)

    # ------------------------------------------------------------- selection

    def resolve_compartment(self):
        """
        Walk the slash separated compartment path down from the tenancy root.

        Raises:
            TenancyNotFound: the tenancy of the credentials cannot be read
            CompartmentNotFound: a path segment has no accessible match
        """
        tenancy_id = self.api.ctx.tenancy_id
        try:
            tenancy = self.api.get_tenancy(tenancy_id)
        except oci.exceptions.ServiceError as e:
            logger.debug(f"Tenancy lookup failed: {e.message}")
            tenancy = None
        if tenancy is None or not tenancy.id:
            raise TenancyNotFound(tenancy_id)

        path = [segment for segment in self.compartment_path.split('/') if segment]
        if not path:
            raise CompartmentNotFound(self.compartment_path, tenancy.id)
        parent_id = tenancy.id
        for count, name in enumerate(path, start=1):
            found = self.api.find_compartment(parent_id, name)
            if not found:
                raise CompartmentNotFound('/'.join(path[:count]), tenancy.id)
            parent_id = found
        self.compartment_id = parent_id
        logger.info(f"Compartment OCID: {self.compartment_id}")
        return self.compartment_id

    def select_projects(self):
        projects = []
        for project in self._list('Project', self.api.list_projects, self.compartment_id):
            if self.name_regexp and not self.name_filter.search(project.name):
                continue
            logger.info(f"Found: {project.name}")
            projects.append(project)
        self.project_names = [p.name for p in projects]
        return projects

    def name_matches(self, name):
        """Prefix match on selected project names, or the name filter when none were selected."""
        name = name or ''
        if self.project_names:
            return any(name.startswith(project_name) for project_name in self.project_names)
        return bool(self.name_filter.search(name))

    # ------------------------------------------------------ compartment sweeps

    def delete_container_images(self):
        images = [i for i in self._list('ContainerImage', self.api.list_container_images, self.compartment_id)
                  if self.name_matches(i.display_name)]
        logger.info(f"Deleting {len(images)} container images")
        self._delete_parallel('ContainerImage', images, self.api.delete_container_image)

    def delete_container_repositories(self):
        repositories = [r for r in self._list('ContainerRepository', self.api.list_container_repositories,
                                              self.compartment_id)
                        if self.name_matches(r.display_name)]
        logger.info(f"Deleting {len(repositories)} container repositories")
        self._delete_parallel('ContainerRepository', repositories, self.api.delete_container_repository)

    def delete_remaining_knowledge_bases(self):
        knowledge_bases = [kb for kb in self._list('KnowledgeBase', self.api.list_knowledge_bases,
                                                   self.compartment_id)
                           if kb.id not in self.swept_knowledge_bases and self.name_matches(kb.display_name)]
        logger.info(f"Deleting {len(knowledge_bases)} remaining knowledge bases")
        self._delete_parallel('KnowledgeBase', knowledge_bases, self.api.delete_knowledge_base)

    def _delete_parallel(self, resource_type, resources, delete):
        if not resources:
            return
        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(resources))) as executor:
            futures = [
                executor.submit(self._delete, resource_type, r.id, getattr(r, 'display_name', None), delete)
                for r in resources
            ]
            for future in as_completed(futures):
                future.result()

    # ------------------------------------------------------------ per project

    def clear_pipelines(self, project):
        """Delete all stages of every pipeline of the project, then the pipelines."""
        build_pipelines = self._list('BuildPipeline', self.api.list_build_pipelines, project.id)
        deploy_pipelines = self._list('DeployPipeline', self.api.list_deploy_pipelines, project.id)
        jobs = [(teardown_build_pipeline, p, 'BuildPipelineStage') for p in build_pipelines]
        jobs += [(teardown_deploy_pipeline, p, 'DeployStage') for p in deploy_pipelines]
        logger.info(f"Waiting on {len(jobs)} pipelines to be cleared...")
        if jobs:
            with ThreadPoolExecutor(max_workers=min(self.max_workers, len(jobs))) as executor:
                futures = {executor.submit(teardown, self.api, pipeline): stage_type
                           for teardown, pipeline, stage_type in jobs}
                for future in as_completed(futures):
                    self._record_teardown(future.result(), futures[future])

        for pipeline in build_pipelines:
            self._delete('BuildPipeline', pipeline.id, pipeline.display_name, self.api.delete_build_pipeline)
        for pipeline in deploy_pipelines:
            self._delete('DeployPipeline', pipeline.id, pipeline.display_name, self.api.delete_deploy_pipeline)
        logger.info("Pipelines cleared")

    def _project_container_repositories(self, project):
        tagged = []
        named = []
        for repository in self._list('ContainerRepository', self.api.list_container_repositories,
                                     self.compartment_id):
            if tag_value(repository, PROJECT_ID_TAG) == project.id:
                tagged.append(repository)
            elif container_repository_matches(repository, project):
                named.append(repository)
        return tagged or named

    def _project_logs(self, project):
        deploy_id = tag_value(project, DEPLOY_ID_TAG)
        if not deploy_id:
            return []
        logs = []
        for log_group in self._list('LogGroup', self.api.list_log_groups, self.compartment_id):
            logs.extend(log for log in self._list('Log', self.api.list_logs, log_group.id)
                        if tag_value(log, DEPLOY_ID_TAG) == deploy_id)
        return logs

    def undeploy_project(self, project):
        """Delete one project, its contents before their containers."""
        api = self.api
        with self._lock:
            self.progress['current_project'] = project.name
        logger.info(f"Starting to undeploy: {project.name} ({project.id})")

        self.clear_pipelines(project)

        logger.info("Deleting deploy artifacts")
        for artifact in self._list('DeployArtifact', api.list_deploy_artifacts, project.id):
            self._delete('DeployArtifact', artifact.id, artifact.display_name, api.delete_deploy_artifact)

        logger.info("Deleting container repositories")
        for repository in self._project_container_repositories(project):
            self._delete('ContainerRepository', repository.id, repository.display_name,
                         api.delete_container_repository)

        logger.info("Deleting code repositories")
        for repository in self._list('CodeRepository', api.list_code_repositories, project.id):
            self._delete('CodeRepository', repository.id, repository.name, api.delete_code_repository)

        logs = self._project_logs(project)
        logger.info(f"Deleting {len(logs)} logs")
        for log in logs:
            self._delete('Log', log.id, log.display_name,
                         lambda log_id, group_id=log.log_group_id: api.delete_log(log_id, group_id))

        knowledge_bases = [kb for kb in self._list('KnowledgeBase', api.list_knowledge_bases, self.compartment_id)
                           if tag_value(kb, PROJECT_ID_TAG) == project.id]
        for kb in knowledge_bases:
            logger.info(f"Listing audits in {kb.display_name}")
            for audit in self._list('VulnerabilityAudit', api.list_vulnerability_audits, self.compartment_id, kb.id):
                self._delete('VulnerabilityAudit', audit.id, audit.display_name, api.delete_vulnerability_audit)
        for kb in knowledge_bases:
            with self._lock:
                self.swept_knowledge_bases.add(kb.id)
            self._delete('KnowledgeBase', kb.id, kb.display_name, api.delete_knowledge_base)

        logger.info("Deleting deploy environments")
        for environment in self._list('DeployEnvironment', api.list_deploy_environments, project.id):
            self._delete('DeployEnvironment', environment.id, environment.display_name,
                         api.delete_deploy_environment)

        for repository in self._list('ArtifactRepository', api.list_artifact_repositories, self.compartment_id):
            if tag_value(repository, PROJECT_ID_TAG) == project.id:
                self._delete('ArtifactRepository', repository.id, repository.display_name,
                             api.delete_artifact_repository)

        logger.info(f"Deleting devops project {project.name}")
        return self._delete('Project', project.id, project.name, api.delete_project)

    # ---------------------------------------------------------------- workflow

    def cleanup(self):
        """
        Main cleanup workflow.

        Returns:
            CleanupReport

        Raises:
            TenancyNotFound, CompartmentNotFound: the compartment path cannot be resolved
        """
        start_time = time.time()
        logger.info(f"Asked to delete {'' if self.name_regexp else 'all '}projects from compartment "
                    f"{self.compartment_path or self.compartment_id}"
                    f"{f' matching {self.name_regexp}' if self.name_regexp else ''}")
        try:
            if not self.compartment_id:
                self.progress['status'] = 'resolving'
                self.progress['phase'] = 'Resolving compartment'
                self.resolve_compartment()
            self.report.compartment_id = self.compartment_id

            projects = self.select_projects()
            self.report.projects = list(self.project_names)
            self.progress['total_projects'] = len(projects)

            self.progress['status'] = 'images'
            self.progress['phase'] = 'Deleting container images and repositories'
            logger.info('=' * 80)
            logger.info('Phase 1: Container images and repositories')
            logger.info('=' * 80)
            self.delete_container_images()
            self.delete_container_repositories()

            self.progress['status'] = 'projects'
            self.progress['phase'] = 'Deleting projects'
            logger.info('=' * 80)
            logger.info(f"Phase 2: Deleting {len(projects)} projects")
            logger.info('=' * 80)
            if projects:
                with ThreadPoolExecutor(max_workers=min(self.max_workers, len(projects))) as executor:
                    futures = {executor.submit(self.undeploy_project, p): p for p in projects}
                    for future in as_completed(futures):
                        project = futures[future]
                        try:
                            future.result()
                        except Exception as e:
                            logger.error(f"Exception undeploying project {project.name}: {e}")
                            self._update_resource_status(project.id, project.name, 'Project', 'failed', str(e))

            self.progress['status'] = 'knowledge_bases'
            self.progress['phase'] = 'Deleting remaining knowledge bases'
            logger.info('=' * 80)
            logger.info('Phase 3: Remaining knowledge bases')
            logger.info('=' * 80)
            self.delete_remaining_knowledge_bases()
        except (TenancyNotFound, CompartmentNotFound) as e:
            self.progress['status'] = 'error'
            self.progress['phase'] = f'Error: {e}'
            raise

        self.progress['status'] = 'complete'
        self.progress['phase'] = 'Cleanup complete'

        elapsed = time.time() - start_time
        logger.info(f"\n{'=' * 80}")
        logger.info(f"Cleanup Summary (completed in {elapsed:.1f} seconds)")
        logger.info('=' * 80)
        logger.info(f"Successfully deleted: {sum(self.deleted_count.values())} resources")
        total_failed = sum(self.failed_count.values())
        if total_failed > 0:
            logger.info(f"Failed to delete: {total_failed} resources")
            logger.info("\nFailed resource types:")
            for rtype, count in sorted(self.failed_count.items()):
                logger.info(f"  - {rtype}: {count}")
        return self.report


def cleanup_compartment(api, compartment_path, name_regexp=None):
    return DevOpsCleaner(api, compartment_path, name_regexp).cleanup()


def _name_regexp(value):
    try:
        re.compile(value)
    except re.error as e:
        raise argparse.ArgumentTypeError(f"invalid project name regexp: {e}")
    return value


class _ArgumentParser(argparse.ArgumentParser):
    def error(self, message):
        self.print_usage(sys.stderr)
        self.exit(EXIT_USAGE, f"{self.prog}: error: {message}\n")


def main(argv=None):
    parser = _ArgumentParser(
        description='DevOps Cleaner - delete devops projects and their resources from a compartment'
    )
    parser.add_argument('compartmentName',
                        help='Compartment path, slash separated names starting below the tenancy')
    parser.add_argument('projectNameRegexp', nargs='?', type=_name_regexp,
                        help='Case insensitive regexp selecting projects by name (default: all projects)')
    args = parser.parse_args(argv)

    logging.basicConfig(
        format='%(asctime)s [%(levelname)s] %(message)s',
        level=logging.INFO
    )

    ctx = oci_context.create_context()
    if ctx is None:
        sys.exit(EXIT_TENANCY_NOT_FOUND)

    try:
        cleanup_compartment(DevOpsApi(ctx), args.compartmentName, args.projectNameRegexp)
    except TenancyNotFound as e:
        logger.error(str(e))
        sys.exit(EXIT_TENANCY_NOT_FOUND)
    except CompartmentNotFound as e:
        logger.error(str(e))
        sys.exit(EXIT_COMPARTMENT_NOT_FOUND)


if __name__ == '__main__':
    main()
