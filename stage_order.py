"""
Deletion order for pipeline stages

A stage lists its predecessors; a predecessor must survive until every
stage that depends on it is gone. Stages are therefore ranked by how many
remaining stages still depend on them and removed leaves-first.
"""

import logging

logger = logging.getLogger(__name__)


class InconsistentPipelineStructure(Exception):
    """The predecessor graph has a cycle, so no safe deletion order exists"""

    def __init__(self, owner_id, remaining_ids):
        super().__init__(
            f"Inconsistent pipeline structure in {owner_id}: "
            f"cannot order stages {', '.join(sorted(remaining_ids))}"
        )
        self.owner_id = owner_id
        self.remaining_ids = list(remaining_ids)


def _collection_items(stage, attr):
    collection = getattr(stage, attr, None)
    if collection is None:
        return None
    return getattr(collection, 'items', None) or []


def stage_predecessors(stage):
    """Predecessor ids of a build pipeline stage or a deploy stage."""
    items = _collection_items(stage, 'build_pipeline_stage_predecessor_collection')
    if items is None:
        items = _collection_items(stage, 'deploy_stage_predecessor_collection')
    if items is None:
        items = getattr(stage, 'predecessors', None) or []
    ids = []
    for item in items:
        if isinstance(item, str):
            ids.append(item)
        elif isinstance(item, dict):
            ids.append(item.get('id'))
        else:
            ids.append(item.id)
    return ids


def rank_stages(owner_id, stages, predecessors=stage_predecessors):
    """
    Group stages into deletion ranks.

    Rank 0 holds the stages nothing depends on. Each following rank holds the
    stages whose dependents were all placed in earlier ranks. Predecessor
    references to the stage itself, to the owning pipeline (``owner_id``) or
    to ids outside ``stages`` are not dependencies.

    A stage is placed only once its remaining dependent count is exactly
    zero. Admitting counts up to the rank number would put a chain such as
    s1 <- s2 <- s3 into ``[s3], [s1, s2]`` and would never report a cycle.

    Returns:
        list of lists of stages, in the order they may be deleted

    Raises:
        InconsistentPipelineStructure: if some stages can never be placed
    """
    by_id = {}
    for stage in stages:
        by_id.setdefault(stage.id, stage)

    rev_deps = {stage_id: 0 for stage_id in by_id}
    depends_on = {stage_id: [] for stage_id in by_id}
    for stage_id, stage in by_id.items():
        for pred_id in predecessors(stage) or []:
            if pred_id == stage_id or pred_id == owner_id:
                continue
            if pred_id not in by_id:
                logger.debug(f"Stage {stage_id} references unknown predecessor {pred_id}")
                continue
            rev_deps[pred_id] += 1
            depends_on[stage_id].append(pred_id)

    levels = []
    rank = 0
    while rev_deps:
        eligible = [stage_id for stage_id, count in rev_deps.items() if count == 0]
        if not eligible:
            raise InconsistentPipelineStructure(owner_id, rev_deps.keys())
        level = []
        for stage_id in eligible:
            del rev_deps[stage_id]
            stage = by_id[stage_id]
            level.append(stage)
            logger.debug(f"- Rank {rank}: stage {getattr(stage, 'display_name', None) or 'unnamed'} = {stage_id}")
        # Released only after the whole rank is placed, so a rank never cascades
        for stage_id in eligible:
            for pred_id in depends_on[stage_id]:
                rev_deps[pred_id] -= 1
        levels.append(level)
        rank += 1
    return levels


def order_for_teardown(owner_id, stages, predecessors=stage_predecessors):
    """Flat deletion order: every stage comes before all of its predecessors."""
    return [stage for level in rank_stages(owner_id, stages, predecessors) for stage in level]
