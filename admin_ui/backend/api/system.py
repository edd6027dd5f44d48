from typing import List, Optional

import docker
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from fusionpbx_ops.containers import ContainerManager, is_safe_container_identifier, sanitize_for_log
from fusionpbx_ops.firewall import FirewallManager
from fusionpbx_ops.logging_config import get_logger
from fusionpbx_ops.platforms import detect_os, platform_for_host

import settings

logger = get_logger(__name__)

router = APIRouter()

# Only the stack's own containers may be restarted from the API
MANAGED_PREFIX = "fusionpbx"


class ContainerInfo(BaseModel):
    id: str
    name: str
    image: str
    status: str
    health: Optional[str] = None


class ContainerHealth(BaseModel):
    name: str
    running: bool
    health: Optional[str] = None


def get_container_manager() -> ContainerManager:
    return ContainerManager()


def get_firewall_manager(containers: ContainerManager = Depends(get_container_manager)) -> FirewallManager:
    return FirewallManager(containers=containers)


def _checked_name(name: str) -> str:
    if not is_safe_container_identifier(name):
        raise HTTPException(status_code=400, detail=f"Invalid container name: {name!r}")
    return name


@router.get("/containers", response_model=List[ContainerInfo])
def get_containers(containers: ContainerManager = Depends(get_container_manager)):
    try:
        return containers.list_containers(MANAGED_PREFIX)
    except docker.errors.DockerException as e:
        logger.error("Error listing containers", error=str(e))
        raise HTTPException(status_code=500, detail="Docker is not reachable")


@router.get("/containers/{name}/health", response_model=ContainerHealth)
def get_container_health(name: str, containers: ContainerManager = Depends(get_container_manager)):
    name = _checked_name(name)
    if not containers.exists(name):
        raise HTTPException(status_code=404, detail=f"Container not found: {name}")
    return ContainerHealth(
        name=name,
        running=containers.is_running(name),
        health=containers.health_status(name),
    )


@router.post("/containers/{name}/restart")
def restart_container(name: str, containers: ContainerManager = Depends(get_container_manager)):
    name = _checked_name(name)
    if not name.startswith(MANAGED_PREFIX):
        raise HTTPException(status_code=400, detail="Only FusionPBX containers can be restarted from the Admin API")

    safe_name = sanitize_for_log(name)
    logger.info("Restarting container", container=safe_name)
    try:
        containers.restart(name)
    except docker.errors.NotFound:
        raise HTTPException(status_code=404, detail=f"Container not found: {name}")
    except docker.errors.APIError as e:
        logger.error("Docker API error restarting container", container=safe_name, error=sanitize_for_log(str(e)))
        raise HTTPException(status_code=500, detail="Docker API error restarting container")
    return {"status": "success", "method": "docker-sdk", "output": f"Container {safe_name} restarted"}


@router.get("/firewall")
def get_firewall(firewall: FirewallManager = Depends(get_firewall_manager)):
    return firewall.status(settings.CONTAINER_NAME, include_rules=False).to_dict()


@router.get("/platform")
def get_platform():
    os_info = detect_os()
    return {"os": os_info, "platform": platform_for_host(settings.PROJECT_ROOT, os_info)}
