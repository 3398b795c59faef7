import itertools
import random
from types import SimpleNamespace

import pytest

from stage_order import InconsistentPipelineStructure, order_for_teardown, rank_stages, stage_predecessors


def stage(stage_id, *preds):
    return SimpleNamespace(id=stage_id, display_name=stage_id, predecessors=[{'id': p} for p in preds])


def ids(stages):
    return [s.id for s in stages]


def assert_safe(order, stages, owner_id='p1'):
    position = {s.id: i for i, s in enumerate(order)}
    for s in stages:
        for pred in stage_predecessors(s):
            if pred in position and pred not in (s.id, owner_id):
                assert position[pred] > position[s.id], f"{pred} deleted before dependent {s.id}"


def test_chain_deletes_last_stage_first():
    stages = [stage('s1'), stage('s2', 's1'), stage('s3', 's2')]

    order = ids(order_for_teardown('p1', stages))

    assert order[0] == 's3'
    assert order.index('s3') < order.index('s1')
    assert order.index('s3') < order.index('s2')
    assert_safe(order_for_teardown('p1', stages), stages)


def test_chain_gets_one_rank_per_stage():
    stages = [stage('s1'), stage('s2', 's1'), stage('s3', 's2')]

    assert [ids(level) for level in rank_stages('p1', stages)] == [['s3'], ['s2'], ['s1']]


def test_self_reference_is_ignored():
    assert ids(order_for_teardown('p1', [stage('s1', 's1')])) == ['s1']


def test_owner_reference_is_ignored():
    assert ids(order_for_teardown('p1', [stage('s1', 'p1')])) == ['s1']


def test_self_and_owner_references_do_not_change_ranks():
    plain = [stage('a'), stage('b', 'a'), stage('c', 'a')]
    noisy = [stage('a', 'p1'), stage('b', 'a', 'b'), stage('c', 'a', 'p1', 'c')]

    assert [sorted(ids(level)) for level in rank_stages('p1', plain)] == \
        [sorted(ids(level)) for level in rank_stages('p1', noisy)]


def test_cycle_raises():
    with pytest.raises(InconsistentPipelineStructure) as excinfo:
        order_for_teardown('p1', [stage('a', 'b'), stage('b', 'a'), stage('c')])

    assert sorted(excinfo.value.remaining_ids) == ['a', 'b']


def test_unknown_predecessor_is_ignored():
    assert ids(order_for_teardown('p1', [stage('s1', 'gone')])) == ['s1']


def test_fan_in_keeps_shared_predecessor_last():
    stages = [stage('build'), stage('a', 'build'), stage('b', 'build'), stage('deliver', 'a', 'b')]

    levels = rank_stages('p1', stages)

    assert [sorted(ids(level)) for level in levels] == [['deliver'], ['a', 'b'], ['build']]


def test_random_dags_order_is_safe():
    rng = random.Random(7)
    for _ in range(25):
        names = [f"s{i}" for i in range(rng.randint(1, 9))]
        stages = []
        for i, name in enumerate(names):
            preds = [p for p in names[:i] if rng.random() < 0.4]
            stages.append(stage(name, *preds))
        rng.shuffle(stages)
        assert_safe(order_for_teardown('p1', stages), stages)


def test_predecessor_collections_from_sdk_models():
    build = SimpleNamespace(id='b1', build_pipeline_stage_predecessor_collection=SimpleNamespace(
        items=[SimpleNamespace(id='b0')]))
    deploy = SimpleNamespace(id='d1', deploy_stage_predecessor_collection=SimpleNamespace(
        items=[SimpleNamespace(id='d0'), SimpleNamespace(id='p1')]))
    plain = SimpleNamespace(id='x', predecessors=['y', {'id': 'z'}])

    assert stage_predecessors(build) == ['b0']
    assert stage_predecessors(deploy) == ['d0', 'p1']
    assert stage_predecessors(plain) == ['y', 'z']
    assert stage_predecessors(SimpleNamespace(id='lonely')) == []


def test_duplicate_stage_listed_once():
    s1 = stage('s1')

    assert ids(order_for_teardown('p1', [s1, s1, stage('s2', 's1')])) == ['s2', 's1']


def test_every_permutation_of_input_is_safe():
    stages = [stage('s1'), stage('s2', 's1'), stage('s3', 's1', 's2')]
    for permutation in itertools.permutations(stages):
        assert ids(order_for_teardown('p1', list(permutation))) == ['s3', 's2', 's1']
