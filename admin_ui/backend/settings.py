import os

# Compose project the API manages; the backend normally runs from admin_ui/backend
PROJECT_ROOT = os.getenv(
    "PROJECT_ROOT",
    os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "..")),
)
ENV_PATH = os.path.join(PROJECT_ROOT, ".env")

CONTAINER_NAME = os.getenv("FUSIONPBX_CONTAINER", "fusionpbx")
BACKUP_BASE_DIR = os.getenv("FUSIONPBX_BASE_DIR", "/opt/fusionpbx")


def admin_token():
    """Shared secret for the API; read on every request so rotating it needs no restart."""
    return os.getenv("ADMIN_API_TOKEN") or None
