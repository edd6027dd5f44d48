from fastapi import FastAPI, Depends
from fastapi.middleware.cors import CORSMiddleware
from api import system, backups, users
import auth
import settings
from dotenv import load_dotenv

from fusionpbx_ops.config import get_settings
from fusionpbx_ops.logging_config import configure_logging

# Same .env the deploy tooling reads
load_dotenv(settings.ENV_PATH)
configure_logging(get_settings().log_level, component="admin-api")

app = FastAPI(title="FusionPBX Ops Admin API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

# All API routes require X-Admin-Token
protected = [Depends(auth.require_token)]
app.include_router(system.router, prefix="/api/system", tags=["system"], dependencies=protected)
app.include_router(backups.router, prefix="/api/backups", tags=["backups"], dependencies=protected)
app.include_router(users.router, prefix="/api/users", tags=["users"], dependencies=protected)


@app.get("/health")
async def health_check():
    return {"status": "healthy"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host="0.0.0.0", port=8000)
