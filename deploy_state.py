"""
Resumable deployment state

A deployment creates dozens of OCI resources. Progress is recorded per step
and written to durable storage after every change, so an interrupted
deployment resumes where it stopped instead of creating duplicates.

Each step is in one of three states:

    not attempted   nothing recorded (stored as absent)
    failed          creation was started but did not finish (stored as false)
    succeeded       the created resource id (stored as the id string)
"""

import json
import logging
import os
import tempfile

logger = logging.getLogger(__name__)

NOT_ATTEMPTED = 'not_attempted'
FAILED = 'failed'
SUCCEEDED = 'succeeded'


class StepState:
    """Recorded outcome of one provisioning step"""

    __slots__ = ('status', 'resource_id')

    def __init__(self, status=NOT_ATTEMPTED, resource_id=None):
        if status == SUCCEEDED and not resource_id:
            raise ValueError("A succeeded step needs a resource id")
        self.status = status
        self.resource_id = resource_id if status == SUCCEEDED else None

    @classmethod
    def not_attempted(cls):
        return cls(NOT_ATTEMPTED)

    @classmethod
    def failed(cls):
        return cls(FAILED)

    @classmethod
    def succeeded(cls, resource_id):
        return cls(SUCCEEDED, resource_id)

    @classmethod
    def from_json(cls, value):
        if value is None:
            return cls.not_attempted()
        if value is False:
            return cls.failed()
        if isinstance(value, dict):
            value = value.get('ocid') or value.get('id')
            if not value:
                return cls.not_attempted()
        if isinstance(value, str) and value:
            return cls.succeeded(value)
        raise ValueError(f"Unrecognized step value: {value!r}")

    def to_json(self):
        if self.status == SUCCEEDED:
            return self.resource_id
        if self.status == FAILED:
            return False
        return None

    @property
    def is_succeeded(self):
        return self.status == SUCCEEDED

    @property
    def is_failed(self):
        return self.status == FAILED

    @property
    def is_not_attempted(self):
        return self.status == NOT_ATTEMPTED

    def __eq__(self, other):
        return (isinstance(other, StepState)
                and self.status == other.status and self.resource_id == other.resource_id)

    def __repr__(self):
        if self.is_succeeded:
            return f"StepState(succeeded, {self.resource_id})"
        return f"StepState({self.status})"


class DeployState:
    """
    Persisted record of one deployment run.

    ``meta`` holds plain values (deployment tag, compartment, project name,
    profile, ...). Steps are keyed by logical name. Per source repository
    state lives in nested scopes returned by ``repository()``.
    """

    def __init__(self, meta=None, steps=None, parent=None):
        self.meta = dict(meta or {})
        self.steps = dict(steps or {})
        self.repositories = {}
        self.parent = parent

    @property
    def root(self):
        state = self
        while state.parent is not None:
            state = state.parent
        return state

    def step(self, key):
        return self.steps.get(key) or StepState.not_attempted()

    def set_step(self, key, step_state):
        if step_state.is_not_attempted:
            self.steps.pop(key, None)
        else:
            self.steps[key] = step_state

    def clear_step(self, key):
        self.steps.pop(key, None)

    def resource_id(self, key):
        return self.step(key).resource_id

    def repository(self, name):
        scope = self.repositories.get(name)
        if scope is None:
            scope = self.repositories[name] = DeployState(parent=self)
        return scope

    def is_empty(self):
        return not self.steps and all(r.is_empty() for r in self.repositories.values())

    def to_dict(self):
        data = dict(self.meta)
        data['steps'] = {key: step.to_json() for key, step in self.steps.items()}
        if self.repositories:
            data['repositories'] = {name: scope.to_dict() for name, scope in self.repositories.items()}
        return data

    @classmethod
    def from_dict(cls, data, parent=None):
        data = dict(data or {})
        steps_data = data.pop('steps', None) or {}
        repositories_data = data.pop('repositories', None) or {}
        state = cls(meta=data, parent=parent)
        for key, value in steps_data.items():
            state.set_step(key, StepState.from_json(value))
        for name, scope_data in repositories_data.items():
            state.repositories[name] = cls.from_dict(scope_data, parent=state)
        return state


class FileStateStore:
    """Keeps the deployment state in a JSON file, rewritten on every dump"""

    def __init__(self, path):
        self.path = os.path.abspath(os.path.expanduser(path))

    def load(self):
        if not os.path.exists(self.path):
            return None
        with open(self.path, 'r') as f:
            return DeployState.from_dict(json.load(f))

    def dump(self, state):
        """Write ``state``; ``None`` removes any persisted state."""
        if state is None:
            if os.path.exists(self.path):
                os.remove(self.path)
                logger.debug(f"Removed deployment state {self.path}")
            return
        directory = os.path.dirname(self.path) or '.'
        fd, tmp_path = tempfile.mkstemp(prefix='.deploy-state-', dir=directory)
        try:
            with os.fdopen(fd, 'w') as f:
                json.dump(state.root.to_dict(), f, indent=2, sort_keys=True)
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise


def ensure(state, key, exists, create, dump, description=None):
    """
    Idempotent "get existing or create new" provisioning step.

    Args:
        state: DeployState scope holding the step
        key: logical step name within the scope
        exists: callable(resource_id) -> truthy when the recorded resource is still there
        create: callable() -> id of the newly created resource
        dump: persistence callable, receives the root state after every change
        description: human label for log messages

    Returns:
        the id of the existing or newly created resource
    """
    description = description or key
    current = state.step(key)

    if current.is_succeeded:
        try:
            alive = exists(current.resource_id)
        except Exception as e:
            logger.info(f"Recorded {description} {current.resource_id} could not be verified: {e}")
            alive = False
        if alive:
            logger.info(f"Using already created {description} ({current.resource_id})")
            return current.resource_id
        logger.info(f"Recorded {description} {current.resource_id} no longer exists, creating a new one")
        state.clear_step(key)
    elif current.is_failed:
        logger.warning(f"Previous attempt to create {description} did not complete, retrying")

    state.set_step(key, StepState.failed())
    dump(state.root)
    try:
        resource_id = create()
        if not resource_id:
            raise RuntimeError(f"Creating {description} returned no resource id")
    except Exception:
        dump(state.root)
        raise
    state.set_step(key, StepState.succeeded(resource_id))
    dump(state.root)
    logger.info(f"Created {description} ({resource_id})")
    return resource_id


class DeployStepFailed(Exception):
    """A deployment step failed; the deployment stopped at that step"""

    def __init__(self, step, cause):
        super().__init__(f"Deployment step '{step}' failed: {cause}")
        self.step = step
        self.cause = cause


class Step:
    def __init__(self, name, run):
        self.name = name
        self.run = run


class StepRunner:
    """Runs steps in order, persisting after each and stopping at the first failure"""

    def __init__(self, state, dump, on_step=None, passthrough=()):
        self.state = state
        self.dump = dump
        self.on_step = on_step
        # Raised unchanged, e.g. an operator cancelling the run
        self.passthrough = tuple(passthrough)
        self.results = {}

    def run(self, steps):
        steps = list(steps)
        for index, step in enumerate(steps):
            if self.on_step:
                self.on_step(step.name, index, len(steps))
            try:
                self.results[step.name] = step.run()
            except (DeployStepFailed,) + self.passthrough:
                self.dump(self.state.root)
                raise
            except Exception as e:
                self.dump(self.state.root)
                raise DeployStepFailed(step.name, e) from e
            self.dump(self.state.root)
        return self.results
