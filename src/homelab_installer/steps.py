"""Step tables for each node role and the built-in step actions."""

import logging
from typing import Dict, List, Optional

from homelab_installer.config import NodeRole, parse_bool
from homelab_installer.exceptions import FetchError, InstallerError
from homelab_installer.ledger import InstalledLedger
from homelab_installer.nodes import NodeRegistry, register_with_master
from homelab_installer.pipeline import FactStore, RunContext, ScriptAction, SkipStep, Step
from homelab_installer.schedule import schedule_ssh_key_sync
from homelab_installer.ssh_keys import (
    MASTER_KEY,
    AuthorizedKeysSync,
    KeyDistributor,
    KeyManager,
    default_authorized_keys,
)

logger = logging.getLogger(__name__)


def factory_reset_done(context: RunContext, facts: FactStore) -> Optional[str]:
    """Cleanup is redundant right after a factory reset."""
    if context.factory_reset_done or parse_bool(facts.get("HOMELAB_FACTORY_RESET_DONE")):
        return "factory reset already performed"
    return None


def setup_ssh_keys(context: RunContext, facts: FactStore) -> Dict[str, str]:
    """Generate keys, merge the remote key list, schedule the daily sync.

    The result is then pushed to every registered worker.
    """
    settings = context.settings
    paths = context.paths
    manager = KeyManager(paths, settings.github_keys_url, InstalledLedger(paths.installed_csv))

    sync = None
    hour = None
    if settings.ssh_key_sync_enabled:
        sync = AuthorizedKeysSync(default_authorized_keys(), backup_dir=paths.backups_dir)
        hour = settings.ssh_key_sync_hour
    else:
        logger.info("SSH key sync disabled (ENABLE_SSH_KEY_SYNC=false)")

    keys = manager.setup(sync=sync, schedule_hour=hour)

    nodes = NodeRegistry(paths.nodes_list).entries()
    if nodes:
        distributor = KeyDistributor(paths, default_authorized_keys(), ssh_user=settings.ssh_user)
        report = distributor.distribute(nodes)
        if report.failed:
            logger.warning(f"Key distribution failed for: {', '.join(report.failed)}")

    return {"HOMELAB_MASTER_KEY": str(keys[MASTER_KEY])}


def sync_worker_keys(context: RunContext, facts: FactStore) -> Dict[str, str]:
    """Merge the remote key list into this worker's authorized_keys.

    Workers never generate key pairs; the control node pushes those.
    """
    settings = context.settings
    paths = context.paths
    if not settings.ssh_key_sync_enabled:
        raise SkipStep("SSH key sync disabled (ENABLE_SSH_KEY_SYNC=false)")

    sync = AuthorizedKeysSync(default_authorized_keys(), backup_dir=paths.backups_dir)
    try:
        result = sync.sync(settings.github_keys_url)
        logger.info(f"Authorized keys synced: {result.added} added, {result.already_present} already present")
    except FetchError as e:
        logger.warning(f"SSH key sync failed, the daily job will retry: {e}")

    try:
        schedule_ssh_key_sync(settings.ssh_key_sync_hour, paths.logs_dir)
    except (InstallerError, ValueError) as e:
        logger.warning(f"Could not schedule SSH key sync: {e}")

    return {"HOMELAB_SSH_KEY_SYNC": "enabled"}


def register_node(context: RunContext, facts: FactStore) -> Dict[str, str]:
    """Add this worker to the control node's registry."""
    if not context.master_ip:
        raise SkipStep("MASTER_IP is not set")
    registered = register_with_master(
        context.master_ip,
        ssh_user=context.settings.ssh_user,
        key_filename=context.paths.ssh_keys_dir / MASTER_KEY,
    )
    return {"HOMELAB_NODE_REGISTERED": str(registered).lower()}


def _script(name: str, script: str, skip_if=None) -> Step:
    return Step(name, ScriptAction(script), skip_if)


def _common_head() -> List[Step]:
    return [
        _script("cloud-init-reset", "00-cloud-init-reset.sh"),
        _script("cleanup", "01-cleanup-existing.sh", skip_if=factory_reset_done),
        _script("environment-setup", "02-environment-setup.sh"),
        _script("system-prerequisites", "05-system-prerequisites.sh"),
        _script("configure-network", "06-configure-network.sh"),
    ]


def _common_tail() -> List[Step]:
    return [
        _script("cron-jobs", "14-setup-cron-jobs.sh"),
        _script("post-install-check", "99-post-install-check.sh"),
    ]


def build_steps(role: NodeRole) -> List[Step]:
    """Ordered steps for a role."""
    if role is NodeRole.MASTER:
        return (
            _common_head()
            + [
                _script("k3s-server", "07-install-k3s-master.sh"),
                _script("metallb", "09-install-metallb.sh"),
                _script("pihole", "10-install-pihole.sh"),
                _script("traefik", "11-install-traefik.sh"),
                _script("argocd", "12-install-argocd.sh"),
                _script("configure-routing", "13-configure-routing.sh"),
                Step("ssh-keys", setup_ssh_keys),
            ]
            + _common_tail()
        )

    return (
        _common_head()
        + [
            _script("k3s-agent", "08-install-k3s-agent.sh"),
            Step("ssh-keys", sync_worker_keys),
            Step("register-node", register_node),
        ]
        + _common_tail()
    )
