"""
The derived cron-jobs: their desired shape and their idempotent ensuring.

A cron-job is derived from a trigger and from the function it refers to.
Its name is deterministic from the trigger's name, so the repeated ensuring
never creates duplicates: it either creates the only one, or converges
the existing one to the desired shape, or does nothing if it is up to date.
"""
import json
import shlex
from collections.abc import Mapping
from typing import Any, cast

from crontrigger._cogs.clients import creating, fetching, patching
from crontrigger._cogs.configs import configuration
from crontrigger._cogs.helpers import typedefs
from crontrigger._cogs.structs import bodies, references

CREATED_BY_LABEL = 'created-by'
FUNCTION_LABEL = 'function'
TRIGGER_LABEL = 'trigger'
COPIED_LABELS_ANNOTATION = 'kubeless.io/function-labels'


def get_workload_name(trigger_name: str, *, settings: configuration.ControllerSettings) -> str:
    return f'{settings.resources.workload_prefix}{trigger_name}'


def get_workload_labels(
        function_name: str,
        *,
        settings: configuration.ControllerSettings,
) -> dict[str, str]:
    """ The labels to find all the cron-jobs of a function (from any trigger). """
    return {
        CREATED_BY_LABEL: settings.resources.creator_label,
        FUNCTION_LABEL: function_name,
    }


def _get_mapping(body: Mapping[str, Any], field: str) -> Mapping[str, Any]:
    value = body.get(field)
    if value is None:
        return {}
    elif not isinstance(value, Mapping):
        raise ValueError(f"The field {field!r} is not a mapping: {value!r}")
    return value


def get_function_port(function: bodies.RawBody, *, settings: configuration.ControllerSettings) -> int:
    """
    The first port of the function's service, or the default one.

    Malformed service specs raise :class:`ValueError`.
    """
    service = _get_mapping(_get_mapping(function, 'spec'), 'service')
    ports = service.get('ports') or []
    if not isinstance(ports, list):
        raise ValueError(f"The function's service ports are not a list: {ports!r}")
    if ports and not isinstance(ports[0], Mapping):
        raise ValueError(f"The function's service port is not a mapping: {ports[0]!r}")
    port = ports[0].get('port') if ports else None
    if not port:
        return settings.resources.function_port
    try:
        return int(port)
    except (TypeError, ValueError):
        raise ValueError(f"The function's service port is not an integer: {port!r}") from None


def get_function_timeout(function: bodies.RawBody) -> int | None:
    """
    The function's timeout in seconds, if it is set and positive.

    The timeout is stored as a string. Empty & non-positive values mean no timeout.
    Non-numeric values are a misconfiguration and raise :class:`ValueError`.
    """
    value = _get_mapping(function, 'spec').get('timeout')
    if value is None or str(value).strip() == '':
        return None
    try:
        timeout = int(str(value).strip())
    except ValueError:
        raise ValueError(f"The function's timeout is not an integer: {value!r}") from None
    return timeout if timeout > 0 else None


def build_command(
        *,
        function: bodies.RawBody,
        payload: Any = None,
        settings: configuration.ControllerSettings,
) -> str:
    """
    Build a shell command to call the function's in-cluster service.

    The event id & time are evaluated by the shell on every run of the job,
    so that every call is a distinct event, while the command itself stays
    the same for the same function (and the cron-job is not re-written).
    """
    name = bodies.get_name(function)
    namespace = bodies.get_namespace(function)
    port = get_function_port(function, settings=settings)
    url = f'http://{name}.{namespace}.svc.cluster.local:{port}'
    headers = [
        '-H "event-id: $(cat /proc/sys/kernel/random/uuid)"',
        '-H "event-time: $(date -u +%Y-%m-%dT%H:%M:%SZ)"',
        '-H "event-type: application/json"',
        f'-H {shlex.quote(f"event-namespace: {settings.resources.event_namespace}")}',
    ]
    data = []
    if payload is not None:
        data += ['-H "Content-Type: application/json"',
                 f'-d {shlex.quote(json.dumps(payload, sort_keys=True))}']
    return ' '.join(['curl', '-Lv', *headers, *data, shlex.quote(url)])


def build_cronjob(
        *,
        trigger: bodies.RawBody,
        function: bodies.RawBody,
        schedule: str,
        resource: references.Resource,
        settings: configuration.ControllerSettings,
) -> bodies.RawBody:
    """
    Build the desired cron-job for the trigger and its function.

    The cron-job is owned by the trigger (for the garbage collection),
    and is labelled with the function's labels plus the controller's own ones.
    The keys of the copied function's labels are remembered in an annotation,
    so that the labels removed from the function are removed from the cron-job too.
    """
    trigger_name = bodies.get_name(trigger)
    function_name = bodies.get_name(function)
    if not trigger_name or not function_name:
        raise ValueError("Both the trigger and the function must have names.")

    own_labels = dict(get_workload_labels(function_name, settings=settings))
    own_labels[TRIGGER_LABEL] = trigger_name
    copied = sorted(set(bodies.get_labels(function)) - set(own_labels))
    labels = dict(bodies.get_labels(function), **own_labels)

    job_spec: dict[str, Any] = {}
    timeout = get_function_timeout(function)
    if timeout is not None:
        job_spec['activeDeadlineSeconds'] = timeout
    job_spec['template'] = {
        'spec': {
            'containers': [{
                'name': 'trigger',
                'image': settings.resources.runner_image,
                'command': ['sh', '-c'],
                'args': [build_command(
                    function=function,
                    payload=_get_mapping(trigger, 'spec').get('payload'),
                    settings=settings,
                )],
            }],
            'restartPolicy': 'Never',
        },
    }

    body = {
        'apiVersion': resource.api_version,
        'kind': resource.kind or settings.resources.workload_kind,
        'metadata': {
            'name': get_workload_name(trigger_name, settings=settings),
            'namespace': bodies.get_namespace(trigger),
            'labels': labels,
            'annotations': {COPIED_LABELS_ANNOTATION: json.dumps(copied)},
            'ownerReferences': [bodies.build_owner_reference(trigger)],
        },
        'spec': {
            'schedule': schedule,
            'concurrencyPolicy': 'Forbid',
            'successfulJobsHistoryLimit': 3,
            'failedJobsHistoryLimit': 1,
            'jobTemplate': {'spec': job_spec},
        },
    }
    return cast(bodies.RawBody, body)


def is_subset(desired: Any, actual: Any) -> bool:
    """
    Check if all the desired values are present in the actual structure.

    The extra keys of the actual dicts are ignored: they are usually
    the server-side defaults (e.g. ``suspend: false``, ``dnsPolicy``), which
    are not managed by the controller. Lists must match item by item.
    """
    if isinstance(desired, Mapping):
        return (isinstance(actual, Mapping) and
                all(key in actual and is_subset(val, actual[key]) for key, val in desired.items()))
    elif isinstance(desired, list):
        return (isinstance(actual, list) and len(desired) == len(actual) and
                all(is_subset(d, a) for d, a in zip(desired, actual)))
    else:
        return bool(desired == actual)


def is_up_to_date(desired: bodies.RawBody, actual: bodies.RawBody) -> bool:
    """ Check if the controller-managed parts of the cron-job are as desired. """
    desired_meta = desired.get('metadata', {})
    actual_meta = actual.get('metadata', {})
    return (
        is_subset(desired_meta.get('labels', {}), actual_meta.get('labels') or {}) and
        is_subset(desired_meta.get('annotations', {}), actual_meta.get('annotations') or {}) and
        is_subset(desired_meta.get('ownerReferences', []), actual_meta.get('ownerReferences') or []) and
        is_subset(desired.get('spec', {}), actual.get('spec') or {})
    )


def get_copied_labels(body: bodies.RawBody) -> set[str]:
    """ The keys of the function's labels that were copied to the cron-job. """
    annotations = body.get('metadata', {}).get('annotations') or {}
    try:
        keys = json.loads(annotations.get(COPIED_LABELS_ANNOTATION) or '[]')
    except ValueError:
        return set()
    return {key for key in keys if isinstance(key, str)} if isinstance(keys, list) else set()


def merge_into(desired: bodies.RawBody, actual: bodies.RawBody) -> bodies.RawBody:
    """
    Overlay the desired managed parts onto the actual object for a replacement.

    The foreign labels & annotations are kept, the owner references & the spec
    are replaced, the observed resource version is kept for the optimistic
    concurrency check. The previously copied function's labels that are not
    desired anymore are removed. The cron-jobs created before the copied labels
    were remembered keep their stale labels, since they cannot be told apart.
    """
    desired_meta = desired.get('metadata', {})
    desired_labels = desired_meta.get('labels', {})
    stale = get_copied_labels(actual) - set(desired_labels)

    merged = dict(actual)
    metadata = dict(actual.get('metadata', {}))
    labels = {key: val for key, val in (metadata.get('labels') or {}).items() if key not in stale}
    metadata['labels'] = dict(labels, **desired_labels)
    metadata['annotations'] = dict(metadata.get('annotations') or {}, **desired_meta.get('annotations', {}))
    metadata['ownerReferences'] = list(desired_meta.get('ownerReferences', []))
    merged['metadata'] = cast(bodies.RawMeta, metadata)
    merged['spec'] = desired.get('spec', {})
    merged.pop('status', None)
    return cast(bodies.RawBody, merged)


async def ensure_cronjob(
        *,
        desired: bodies.RawBody,
        resource: references.Resource,
        settings: configuration.ControllerSettings,
        logger: typedefs.Logger,
) -> bool:
    """
    Create or update the cron-job to match the desired one.

    Returns ``True`` if anything was written, ``False`` if it was up to date.
    A create that loses a race to another creator, and a replacement that
    conflicts with a concurrent modification, are both escalated as
    :class:`errors.APIConflictError` and are expected to be retried.
    """
    namespace = bodies.get_namespace(desired)
    name = bodies.get_name(desired)
    if not name:
        raise ValueError("The cron-job must have a name.")

    actual = await fetching.read_obj(
        resource=resource,
        namespace=namespace,
        name=name,
        settings=settings,
        logger=logger,
    )
    if actual is None:
        await creating.create_obj(resource=resource, body=desired, settings=settings, logger=logger)
        logger.info(f"Cron-job {name!r} is created with schedule {desired['spec']['schedule']!r}.")
        return True
    elif is_up_to_date(desired, actual):
        logger.debug(f"Cron-job {name!r} is up to date.")
        return False
    else:
        await patching.replace_obj(
            resource=resource,
            body=merge_into(desired, actual),
            settings=settings,
            logger=logger,
        )
        logger.info(f"Cron-job {name!r} is updated with schedule {desired['spec']['schedule']!r}.")
        return True
