"""
In-target configuration.

Hands the installation context to the installed system as a shell artifact
and runs the built-in configuration steps, plus the optional user script,
through arch-chroot.
"""
import logging
import os
import shlex
import subprocess
from pathlib import Path
from typing import Dict, List, Optional

from stratum.config import write_target_file
from stratum.config.bootloader import initramfs_hooks, kernel_cmdline
from stratum.utils.format import TermColors, colorize
from stratum.core.context import ProvisionContext
from stratum.core.exceptions import BootstrapFailure

logger = logging.getLogger('stratum')

CONTEXT_ARTIFACT = "/root/stratum-install.env"
SCRIPT_ARTIFACT = "/root/stratum-chroot.sh"
CHROOT = "arch-chroot"


def build_context_record(ctx: ProvisionContext) -> Dict[str, str]:
    """
    Everything the installed system needs to know about this run.

    The settings snapshot leaves out the passphrase and the confirmation
    token; account passwords are handed over on stdin only.
    """
    record = ctx.settings.export_record()
    for key in ("MAIN_USER_PASSWORD", "ROOT_PASSWORD"):
        record.pop(key, None)
    record.update(ctx.registry.export_record())
    record["KERNEL_CMDLINE"] = kernel_cmdline(ctx)
    record["INITRAMFS_HOOKS"] = " ".join(initramfs_hooks(ctx))
    return record


def render_context(record: Dict[str, str]) -> str:
    return "".join(f"export {key}={shlex.quote(value)}\n" for key, value in sorted(record.items()))


class TargetConfigurator:
    """
    Runs configuration steps inside the mounted target.

    The context artifact exists only while the steps run; it is removed on
    every exit path.
    """
    def __init__(self, context: ProvisionContext):
        self.context = context
        self.cmd_runner = context.cmd_runner
        self.target_root = context.mounts.target_root

    def _host(self, path: str) -> Path:
        return self.target_root / path.lstrip("/")

    def chroot(self, script: str, description: str, secret_input: Optional[str] = None) -> None:
        """
        Run a shell snippet inside the target with the context sourced.

        Raises:
            BootstrapFailure: If the snippet fails
        """
        cmd = [CHROOT, str(self.target_root), "/bin/bash", "-c", f". {CONTEXT_ARTIFACT} && {script}"]
        logger.info(f"In target: {description}")
        try:
            if secret_input is None:
                self.cmd_runner.run(cmd)
            else:
                self.cmd_runner.run(cmd, input=secret_input)
        except subprocess.CalledProcessError as e:
            raise BootstrapFailure(f"In-target step '{description}' failed: {e.stderr or e}")

    def configure(self) -> None:
        """
        Write the context artifact and run every in-target step.

        Raises:
            BootstrapFailure: If any step fails
        """
        settings = self.context.settings
        record = build_context_record(self.context)
        artifact = self._host(CONTEXT_ARTIFACT)
        script_copy: Optional[Path] = None

        try:
            write_target_file(artifact, render_context(record), self.cmd_runner, mode=0o600, sensitive=True)

            if settings.system_hostname:
                self.chroot('echo "$SYSTEM_HOSTNAME" > /etc/hostname', "set hostname")

            if settings.main_username:
                self.chroot('id -u "$MAIN_USERNAME" >/dev/null 2>&1 || useradd -m -G wheel "$MAIN_USERNAME"',
                            f"create user {settings.main_username}")

            credentials = self._credentials()
            if credentials:
                self.chroot("chpasswd", "set account passwords", secret_input=credentials)

            self.chroot(
                'sed -i "s/^HOOKS=.*/HOOKS=($INITRAMFS_HOOKS)/" /etc/mkinitcpio.conf && mkinitcpio -P',
                "rebuild initramfs"
            )

            if settings.chroot_script:
                script_copy = self._host(SCRIPT_ARTIFACT)
                self._install_script(settings.chroot_script, script_copy)
                self.chroot(f"bash {SCRIPT_ARTIFACT}", "run post-install script")
        except OSError as e:
            raise BootstrapFailure(f"Cannot prepare in-target configuration: {e}")
        finally:
            self._remove(artifact)
            if script_copy is not None:
                self._remove(script_copy)

        logger.info(colorize("In-target configuration completed", TermColors.SUCCESS, self.cmd_runner.colored_output))

    def _credentials(self) -> str:
        settings = self.context.settings
        lines: List[str] = []
        if settings.root_password:
            lines.append(f"root:{settings.root_password}")
        if settings.main_username and settings.main_user_password:
            lines.append(f"{settings.main_username}:{settings.main_user_password}")
        return "".join(line + "\n" for line in lines)

    def _install_script(self, source: str, destination: Path) -> None:
        """
        Raises:
            BootstrapFailure: If the script does not exist
        """
        if self.cmd_runner.simulating:
            logger.info(f"Would copy {source} to {destination}")
            return
        try:
            with open(source, "r", encoding="utf-8") as handle:
                content = handle.read()
        except OSError as e:
            raise BootstrapFailure(f"Cannot read CHROOT_SCRIPT {source}: {e}")
        write_target_file(destination, content, self.cmd_runner, mode=0o700)

    def _remove(self, path: Path) -> None:
        if self.cmd_runner.simulating:
            logger.info(f"Would remove {path}")
            return
        try:
            os.unlink(str(path))
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Could not remove {path}: {e}")
