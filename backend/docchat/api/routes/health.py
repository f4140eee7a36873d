from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from docchat.platform.health import HealthChecker

router = APIRouter()


@router.get("/health")
def health():
    return {"status": "ok"}


@router.get("/api/health/readiness")
async def readiness(request: Request):
    """Readiness probe covering the database and the credential store."""
    checker = HealthChecker(credential_store=request.app.state.credential_store)
    database = checker.check_database()
    credential_store = await checker.check_credential_store()

    ready = database["status"] == "ok" and credential_store["status"] == "ok"
    return JSONResponse(
        status_code=200 if ready else 503,
        content={
            "status": "ready" if ready else "not_ready",
            "checks": {
                "database": database,
                "credential_store": credential_store,
            },
        },
    )
