"""
Pipeline stage teardown

A pipeline can only be deleted once all of its stages are gone, and a stage
can only be deleted once nothing depends on it. Stages are removed rank by
rank (see stage_order); a stage that cannot be deleted is recorded and the
rest of the pipeline is still cleared.
"""

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed

import oci

from devops_utils import DEPLOY_ID_TAG, is_gone, tag_value
from stage_order import InconsistentPipelineStructure, rank_stages, stage_predecessors

logger = logging.getLogger(__name__)


class TeardownReport:
    """Outcome of clearing one pipeline: what went away and what did not"""

    def __init__(self, pipeline_id, pipeline_name=None):
        self.pipeline_id = pipeline_id
        self.pipeline_name = pipeline_name
        self.deleted = []
        self.errors = []

    @property
    def ok(self):
        return not self.errors

    def add_error(self, resource_id, error):
        self.errors.append((resource_id, str(error)))

    def __repr__(self):
        return (f"TeardownReport({self.pipeline_id}, deleted={len(self.deleted)}, "
                f"errors={len(self.errors)})")


def _stage_label(stage):
    return f"{getattr(stage, 'display_name', None) or 'unnamed'}({stage.id})"


def _delete_one(stage, delete_stage, report, kind):
    logger.info(f"Deleting {kind} stage {_stage_label(stage)}")
    try:
        delete_stage(stage.id)
    except oci.exceptions.ServiceError as e:
        if e.status == 404:
            logger.info(f"{kind.capitalize()} stage already deleted or not found: {_stage_label(stage)}")
            report.deleted.append(stage.id)
            return
        logger.error(f"Error deleting {kind} stage {_stage_label(stage)}: {e.message}")
        report.add_error(stage.id, e.message)
        return
    except Exception as e:
        logger.error(f"Error deleting {kind} stage {_stage_label(stage)}: {e}")
        report.add_error(stage.id, e)
        return
    report.deleted.append(stage.id)


def delete_ranked(owner_id, stages, delete_stage, report, kind='pipeline',
                  predecessors=stage_predecessors, max_workers=1):
    """Delete ``stages`` rank by rank, recording every outcome in ``report``."""
    try:
        levels = rank_stages(owner_id, stages, predecessors)
    except InconsistentPipelineStructure as e:
        logger.error(str(e))
        report.add_error(owner_id, e)
        return report

    logger.info(f"Delete order for {owner_id}: "
                f"{' | '.join(', '.join(s.id for s in level) for level in levels)}")
    for level in levels:
        if max_workers > 1 and len(level) > 1:
            with ThreadPoolExecutor(max_workers=min(max_workers, len(level))) as executor:
                futures = [executor.submit(_delete_one, stage, delete_stage, report, kind) for stage in level]
                for future in as_completed(futures):
                    future.result()
        else:
            for stage in level:
                _delete_one(stage, delete_stage, report, kind)
    return report


def teardown_pipeline_contents(pipeline_id, list_stages, delete_stage, pipeline_name=None, kind='pipeline',
                               predecessors=stage_predecessors, max_workers=1):
    """
    Delete every stage of a pipeline, leaves of the dependency graph first.

    Per-stage failures are logged and collected; the remaining stages are
    still attempted. The report always carries the pipeline id so the caller
    can go on to delete the pipeline itself.
    """
    name = pipeline_name or '(unnamed)'
    report = TeardownReport(pipeline_id, pipeline_name)
    try:
        stages = [s for s in list_stages(pipeline_id) if not is_gone(s)]
    except Exception as e:
        logger.error(f"Error listing stages of {kind} pipeline {name}({pipeline_id}): {e}")
        report.add_error(pipeline_id, e)
        return report

    logger.info(f"Delete contents of {kind} pipeline {name}({pipeline_id}): {len(stages)} stages")
    delete_ranked(pipeline_id, stages, delete_stage, report, kind, predecessors, max_workers)
    if report.ok:
        logger.info(f"{kind.capitalize()} pipeline {name}({pipeline_id}) cleared.")
    else:
        logger.warning(f"{kind.capitalize()} pipeline {name}({pipeline_id}) cleared with {len(report.errors)} errors")
    return report


def teardown_build_pipeline(api, pipeline, max_workers=1):
    return teardown_pipeline_contents(
        pipeline.id, api.list_build_pipeline_stages, api.delete_build_pipeline_stage,
        pipeline_name=getattr(pipeline, 'display_name', None), kind='build', max_workers=max_workers
    )


def teardown_deploy_pipeline(api, pipeline, max_workers=1):
    return teardown_pipeline_contents(
        pipeline.id, api.list_deploy_stages, api.delete_deploy_stage,
        pipeline_name=getattr(pipeline, 'display_name', None), kind='deploy', max_workers=max_workers
    )


def delete_stages_by_deploy_tag(api, compartment_id, tag, kind='build'):
    """
    Delete all stages in the compartment created by one deployment run.

    Stages are grouped per owning pipeline and each group is deleted in
    dependency order.
    """
    if kind == 'build':
        stages = api.list_build_pipeline_stages_in_compartment(compartment_id)
        delete_stage = api.delete_build_pipeline_stage
        owner_attr = 'build_pipeline_id'
    else:
        stages = api.list_deploy_stages_in_compartment(compartment_id)
        delete_stage = api.delete_deploy_stage
        owner_attr = 'deploy_pipeline_id'

    by_pipeline = {}
    for stage in stages:
        if tag_value(stage, DEPLOY_ID_TAG) == tag and not is_gone(stage):
            by_pipeline.setdefault(getattr(stage, owner_attr, None), []).append(stage)

    reports = []
    for pipeline_id, pipeline_stages in by_pipeline.items():
        report = TeardownReport(pipeline_id)
        delete_ranked(pipeline_id, pipeline_stages, delete_stage, report, kind)
        reports.append(report)
    return reports
