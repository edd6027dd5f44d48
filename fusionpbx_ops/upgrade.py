"""FusionPBX's own upgrade.php steps, run inside the container."""

from typing import List

UPGRADE_SCRIPT = "/var/www/fusionpbx/core/upgrade/upgrade.php"

# Order used by the official installer
INSTALL_STEPS = ("--schema", "--defaults", "--permissions")
STEPS = ("--schema", "--defaults", "--permissions", "--menu", "--services")


def upgrade_argv(step: str) -> List[str]:
    if step not in STEPS:
        raise ValueError(f"Unknown upgrade step: {step}")
    return ["php", UPGRADE_SCRIPT, step]
