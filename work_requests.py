"""
Work request completion polling

Turns the asynchronous "work request" style OCI operations (devops, ADM,
logging) into blocking calls. A work request is polled at a fixed interval
until it reaches a terminal status or the maximum wait is exceeded.
"""

import logging
import time

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 2.0
DEFAULT_MAX_WAIT = 60.0

SUCCEEDED = 'SUCCEEDED'
FAILED = 'FAILED'
CANCELED = 'CANCELED'

# Anything else (ACCEPTED, IN_PROGRESS, CANCELING, CREATING, WAITING, ...) keeps polling
TERMINAL_STATUSES = {SUCCEEDED, FAILED, CANCELED}


class WorkRequestError(Exception):
    """Base class for work request failures"""

    def __init__(self, message, description, request_id=None):
        super().__init__(message)
        self.description = description
        self.request_id = request_id


class RemoteOperationFailed(WorkRequestError):
    """The work request finished in FAILED or CANCELED status"""

    def __init__(self, description, status, request_id=None):
        super().__init__(f"{description} failed (work request status {status})", description, request_id)
        self.status = status


class WorkRequestTimeout(WorkRequestError):
    """No terminal status was observed within the maximum wait"""

    def __init__(self, description, request_id=None, waited=None):
        super().__init__(f"Timeout while waiting for {description}", description, request_id)
        self.waited = waited


def normalize_status(status):
    return str(status or '').upper().replace(' ', '_')


def await_completion(get_work_request, request_id, description,
                     poll_interval=DEFAULT_POLL_INTERVAL, max_wait=DEFAULT_MAX_WAIT, sleep=time.sleep):
    """
    Wait for a single-resource work request to finish.

    Args:
        get_work_request: callable taking the request id and returning an SDK
            response whose ``data`` carries ``status`` and ``resources``
        request_id: id of the work request to follow
        description: human description of the operation, used in errors

    Returns:
        identifier of the first affected resource, or None when the work
        request reports no affected resources
    """
    attempts = max(1, int(max_wait / poll_interval)) if poll_interval > 0 else 1
    work_request = None
    for attempt in range(attempts):
        current = get_work_request(request_id).data
        status = normalize_status(current.status)
        logger.debug(f"Work request {request_id} ({description}): {status} [{attempt + 1}/{attempts}]")
        if status in TERMINAL_STATUSES:
            work_request = current
            break
        if attempt + 1 < attempts:
            sleep(poll_interval)

    if work_request is None:
        raise WorkRequestTimeout(description, request_id, waited=max_wait)

    status = normalize_status(work_request.status)
    if status != SUCCEEDED:
        raise RemoteOperationFailed(description, status, request_id)

    resources = work_request.resources or []
    if not resources:
        return None
    return resources[0].identifier
