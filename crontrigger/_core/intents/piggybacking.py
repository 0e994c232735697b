"""
Rudimentary logins to the cluster: in-cluster and via the kubeconfig files.

The controller is not a client library, and avoids bringing too much logic
for proper authentication, especially all the complex auth-providers.
Only the raw credentials are extracted: tokens, certificates, basic auth.

.. seealso::
    :mod:`crontrigger._cogs.structs.credentials`.
"""
import logging
import os
from typing import Any

import yaml

from crontrigger._cogs.helpers import typedefs
from crontrigger._cogs.structs import credentials

logger = logging.getLogger(__name__)

# As per https://kubernetes.io/docs/tasks/run-application/access-api-from-pod/
SERVICE_ACCOUNT_DIR = '/var/run/secrets/kubernetes.io/serviceaccount'
SERVICE_ACCOUNT_SERVER = 'https://kubernetes.default.svc'
DEFAULT_KUBECONFIG = '~/.kube/config'


def login_with_service_account(
        *,
        root: str = SERVICE_ACCOUNT_DIR,
) -> credentials.ConnectionInfo | None:
    """
    Get the raw credentials of the pod's service account, if mounted.
    """
    token_path = os.path.join(root, 'token')
    ns_path = os.path.join(root, 'namespace')
    ca_path = os.path.join(root, 'ca.crt')

    if not os.path.exists(token_path):
        return None

    with open(token_path, encoding='utf-8') as f:
        token = f.read().strip()

    namespace: str | None = None
    if os.path.exists(ns_path):
        with open(ns_path, encoding='utf-8') as f:
            namespace = f.read().strip()

    return credentials.ConnectionInfo(
        server=SERVICE_ACCOUNT_SERVER,
        ca_path=ca_path if os.path.exists(ca_path) else None,
        token=token or None,
        default_namespace=namespace or None,
    )


def login_with_kubeconfig(
        *,
        context_name: str | None = None,
) -> credentials.ConnectionInfo | None:
    """
    Get the raw credentials of the current (or given) context of the kubeconfigs.

    The ``KUBECONFIG`` variable can list several files: the first value wins
    for every context, cluster & user, as prescribed for kubectl.
    """
    kubeconfig = os.environ.get('KUBECONFIG')
    if not kubeconfig and os.path.exists(os.path.expanduser(DEFAULT_KUBECONFIG)):
        kubeconfig = DEFAULT_KUBECONFIG
    if not kubeconfig:
        return None

    paths = [path.strip() for path in kubeconfig.split(os.pathsep)]
    paths = [os.path.expanduser(path) for path in paths if path]

    # If a file is absent or non-deserialisable, then fail.
    current_context: str | None = context_name
    contexts: dict[Any, Any] = {}
    clusters: dict[Any, Any] = {}
    users: dict[Any, Any] = {}
    for path in paths:
        try:
            with open(path, encoding='utf-8') as f:
                config = yaml.safe_load(f.read()) or {}
        except (OSError, yaml.YAMLError) as e:
            raise credentials.LoginError(f"Cannot read the kubeconfig {path!r}: {e}") from e

        if current_context is None:
            current_context = config.get('current-context')
        for item in config.get('contexts') or []:
            contexts.setdefault(item['name'], item.get('context') or {})
        for item in config.get('clusters') or []:
            clusters.setdefault(item['name'], item.get('cluster') or {})
        for item in config.get('users') or []:
            users.setdefault(item['name'], item.get('user') or {})

    if current_context is None:
        raise credentials.LoginError("Current context is not set in kubeconfigs.")
    try:
        context = contexts[current_context]
        cluster = clusters[context['cluster']]
        user = users.get(context.get('user'), {})
    except KeyError as e:
        raise credentials.LoginError(f"The kubeconfig context {current_context!r} is broken: "
                                     f"{e} is not found.") from e

    if not cluster.get('server'):
        raise credentials.LoginError(f"The kubeconfig context {current_context!r} has no server.")

    provider_token = user.get('auth-provider', {}).get('config', {}).get('access-token')
    return credentials.ConnectionInfo(
        server=cluster.get('server'),
        ca_path=cluster.get('certificate-authority'),
        ca_data=cluster.get('certificate-authority-data'),
        insecure=cluster.get('insecure-skip-tls-verify'),
        certificate_path=user.get('client-certificate'),
        certificate_data=user.get('client-certificate-data'),
        private_key_path=user.get('client-key'),
        private_key_data=user.get('client-key-data'),
        username=user.get('username'),
        password=user.get('password'),
        token=user.get('token') or provider_token,
        default_namespace=context.get('namespace'),
    )


def login(
        *,
        context_name: str | None = None,
        logger: typedefs.Logger = logger,
) -> credentials.ConnectionInfo:
    """
    Login in-cluster if possible, otherwise via kubeconfig; fail if neither works.

    An explicitly requested kubeconfig context takes precedence over the in-cluster login.
    """
    if context_name is None:
        info = login_with_service_account()
        if info is not None:
            logger.debug("Logged in with the in-cluster service account.")
            return info

    info = login_with_kubeconfig(context_name=context_name)
    if info is not None:
        logger.debug("Logged in via the kubeconfig.")
        return info

    raise credentials.LoginError("Cannot authenticate neither in-cluster, nor via kubeconfig.")
