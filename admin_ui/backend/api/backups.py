from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from fusionpbx_ops.backup import BackupManager
from fusionpbx_ops.config import get_settings
from fusionpbx_ops.containers import ComposeProject, ContainerManager
from fusionpbx_ops.errors import OpsError, PreconditionError
from fusionpbx_ops.logging_config import get_logger

import settings

logger = get_logger(__name__)

router = APIRouter()


class BackupInfo(BaseModel):
    name: str
    size_bytes: int
    modified: datetime


class BackupRequest(BaseModel):
    retention_days: Optional[int] = Field(default=None, ge=0)


class BackupCreated(BaseModel):
    name: str
    archive: str
    size_bytes: int
    included: List[str]
    skipped: List[str]
    pruned: List[str]


def get_backup_manager() -> BackupManager:
    return BackupManager(
        ContainerManager(),
        ComposeProject(settings.PROJECT_ROOT),
        base_dir=settings.BACKUP_BASE_DIR,
        container_name=settings.CONTAINER_NAME,
    )


@router.get("", response_model=List[BackupInfo])
def list_backups(manager: BackupManager = Depends(get_backup_manager)):
    result = []
    for path in manager.list_backups():
        stat = path.stat()
        result.append(BackupInfo(
            name=path.name,
            size_bytes=stat.st_size,
            modified=datetime.fromtimestamp(stat.st_mtime),
        ))
    return result


@router.post("", response_model=BackupCreated, status_code=201)
def create_backup(request: BackupRequest, manager: BackupManager = Depends(get_backup_manager)):
    retention = request.retention_days
    if retention is None:
        retention = get_settings().backup_retention_days
    try:
        created = manager.create(retention)
    except PreconditionError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except OpsError as e:
        logger.error("Backup failed", error=str(e))
        raise HTTPException(status_code=500, detail=str(e))
    return BackupCreated(
        name=created.name,
        archive=str(created.archive),
        size_bytes=created.size_bytes,
        included=created.included,
        skipped=created.skipped,
        pruned=[p.name for p in created.pruned],
    )
