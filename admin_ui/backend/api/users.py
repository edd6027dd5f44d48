from fastapi import APIRouter, Depends, HTTPException

from fusionpbx_ops.config import Settings, get_settings
from fusionpbx_ops.containers import ContainerManager
from fusionpbx_ops.database import ContainerPsql, Database
from fusionpbx_ops.diagnostics import collect_report
from fusionpbx_ops.errors import DatabaseError, OpsError, PreconditionError
from fusionpbx_ops.logging_config import get_logger
from fusionpbx_ops.repair import AdminGroupRepair

import settings as api_settings

logger = get_logger(__name__)

router = APIRouter()


def get_ops_settings() -> Settings:
    return get_settings()


def get_database(ops: Settings = Depends(get_ops_settings)) -> Database:
    return ContainerPsql(api_settings.CONTAINER_NAME, ops.db)


def get_repair(
    db: Database = Depends(get_database),
    ops: Settings = Depends(get_ops_settings),
) -> AdminGroupRepair:
    return AdminGroupRepair(ContainerManager(), db, ops, container_name=api_settings.CONTAINER_NAME)


@router.get("/diagnostics")
def get_diagnostics(db: Database = Depends(get_database), ops: Settings = Depends(get_ops_settings)):
    try:
        report = collect_report(db, ops.fusionpbx.domain, ops.fusionpbx.admin_user)
    except DatabaseError as e:
        raise HTTPException(status_code=503, detail=str(e))
    data = report.to_dict()
    data["healthy"] = report.healthy
    return data


@router.post("/repair")
def repair_admin_groups(repair: AdminGroupRepair = Depends(get_repair)):
    try:
        result = repair.run()
    except PreconditionError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except OpsError as e:
        logger.error("Admin group repair failed", error=str(e))
        raise HTTPException(status_code=500, detail=str(e))
    return {
        "status": "success",
        "user_uuid": result.user_uuid,
        "manually_assigned": result.manually_assigned,
        "healthy": result.after.healthy if result.after else False,
        "recommendations": result.after.recommendations if result.after else [],
    }
