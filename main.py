import logging
from typing import Optional

from fastapi import FastAPI, HTTPException

from config import get_settings
from scheduler import SchedulerManager
from schemas import JobInfoOut, JobRunOut

app = FastAPI(title="Ledger Jobs")

scheduler_manager: Optional[SchedulerManager] = None


def get_scheduler() -> SchedulerManager:
    global scheduler_manager
    if scheduler_manager is None:
        scheduler_manager = SchedulerManager()
    return scheduler_manager


@app.on_event("startup")
def on_startup() -> None:
    if get_settings().scheduler_enabled:
        get_scheduler().start()
    else:
        logging.info("Scheduler disabled by LEDGER_SCHEDULER_ENABLED")


@app.on_event("shutdown")
def on_shutdown() -> None:
    if scheduler_manager is not None:
        scheduler_manager.stop()


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/jobs", response_model=list[JobInfoOut])
def list_jobs() -> list[JobInfoOut]:
    manager = get_scheduler()
    next_runs = manager.next_run_times()
    return [
        JobInfoOut(id=name, next_run_time=next_runs.get(name))
        for name in sorted(manager.jobs)
    ]


@app.post("/jobs/{name}/run", response_model=JobRunOut)
def run_job(name: str) -> JobRunOut:
    manager = get_scheduler()
    if name not in manager.jobs:
        raise HTTPException(status_code=404, detail="Job not found")
    result = manager.run_job(name, "api")
    return JobRunOut(job=name, source="api", result=result)
