"""
RAID membership record for the target.
"""
import logging

from stratum.config import create_etc_directory, write_target_file
from stratum.core.context import ProvisionContext
from stratum.core.exceptions import BootstrapFailure
from stratum.core.raid import scan_arrays

logger = logging.getLogger('stratum')


def generate_mdadm_conf(ctx: ProvisionContext) -> bool:
    """
    Append the scanned array definitions to the target's /etc/mdadm.conf.

    Runs at most once per installation, after every array is assembled.

    Returns:
        True if the record was written by this call

    Raises:
        RaidAssemblyFailure: If the arrays cannot be scanned
        BootstrapFailure: If the file cannot be written
    """
    if not ctx.raid_arrays:
        return False
    if ctx.mdadm_conf_written:
        logger.debug("mdadm.conf already written, skipping")
        return False

    scan = scan_arrays(ctx.cmd_runner)

    etc_path = create_etc_directory(ctx.mounts.target_root, ctx.cmd_runner)
    try:
        write_target_file(etc_path / "mdadm.conf", scan, ctx.cmd_runner, append=True)
    except OSError as e:
        raise BootstrapFailure(f"Failed to write mdadm.conf: {e}")

    ctx.mdadm_conf_written = True
    logger.info(f"Recorded {len(ctx.raid_arrays)} array(s) in {etc_path / 'mdadm.conf'}")
    return True
