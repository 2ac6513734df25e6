"""End-to-end installation run: resolve, collect, confirm, execute."""

import logging
import os
from pathlib import Path
from typing import Dict, List, MutableMapping, Optional

from homelab_installer.config import InstallPaths, Settings
from homelab_installer.credentials import MASTER_SERVICES, CredentialCollector
from homelab_installer.environment import EnvironmentResolver
from homelab_installer.ledger import InstalledLedger
from homelab_installer.pipeline import Pipeline, PipelineResult, RunContext, Step
from homelab_installer.prompts import Prompter
from homelab_installer.steps import build_steps

logger = logging.getLogger(__name__)


class Installer:
    """Drives one ``install`` invocation against a home directory."""

    def __init__(
        self,
        paths: InstallPaths,
        scripts_dir: Optional[Path] = None,
        installer_dir: Optional[Path] = None,
        prompter: Optional[Prompter] = None,
        environ: Optional[MutableMapping[str, str]] = None,
        auto_confirm: bool = False,
    ):
        self.paths = paths
        self.scripts_dir = scripts_dir or paths.scripts_dir
        self.prompter = prompter or Prompter()
        self.environ = environ if environ is not None else os.environ
        if auto_confirm:
            # --auto-confirm outranks every configuration source
            self.environ = dict(self.environ)
            self.environ["AUTO_CONFIRM"] = "true"
        self.resolver = EnvironmentResolver(paths, installer_dir, self.prompter, self.environ)
        self.ledger = InstalledLedger(paths.installed_csv)

    def prepare(self) -> Settings:
        """Resolve configuration and write the node snapshot and ledger header."""
        settings = self.resolver.resolve()
        self.resolver.write_node_info(settings)
        self.ledger.ensure_header()
        return settings

    def collect_credentials(self, settings: Settings) -> Dict[str, str]:
        """Service passwords; only the control node runs services that need them."""
        if not settings.role.is_master:
            return {}
        collector = CredentialCollector(
            self.paths.credentials_file,
            prompter=self.prompter,
            environ=self.environ,
            service_user=settings.service_user,
            auto_confirm=settings.auto_confirm,
        )
        return collector.collect(MASTER_SERVICES)

    def context(self, settings: Settings, credentials: Dict[str, str]) -> RunContext:
        return RunContext.build(settings, self.paths, self.scripts_dir, credentials)

    def steps(self, context: RunContext) -> List[Step]:
        return build_steps(context.role)

    def confirm(self, context: RunContext) -> bool:
        if context.auto_confirm:
            return True
        return self.prompter.confirm(f"Proceed with {context.role.value} installation?", default=False)

    def run(self, resume: bool = False) -> Optional[PipelineResult]:
        """Run the full installation.

        Returns:
            The pipeline result, or None when the operator declined to proceed.

        Raises:
            ConfigError: If required configuration or credentials are missing
                and prompting is not allowed.
        """
        settings = self.prepare()
        credentials = self.collect_credentials(settings)
        context = self.context(settings, credentials)

        logger.info(f"Starting {context.role.value} installation ({context.node_name})")
        if not self.confirm(context):
            logger.info("Installation cancelled")
            return None

        pipeline = Pipeline(self.steps(context), state_path=self.paths.run_state)
        result = pipeline.run(context, resume=resume)
        if result.ok:
            logger.info(f"Installation of {context.node_name} completed successfully")
        return result
