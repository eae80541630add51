import logging
import os
import subprocess
from datetime import datetime
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.config import QueueReorderOptions, load_queue_reorder_options
from app.database import init_db
from app.routes import queue_reorder
from app.services.queue_optimizer import CpSatQueueOptimizer, OptimizerWeights
from app.services.queue_reorder import QueueReorderCoordinator
from app.services.reorder_plan_cache import InMemoryReorderPlanCache

logger = logging.getLogger(__name__)

app = FastAPI(title="Karaoke Queue Reorder API")


# Get build info
def get_build_info():
    """Get git commit hash or build timestamp"""
    try:
        result = subprocess.run(
            ["git", "rev-parse", "--short", "HEAD"],
            cwd=os.path.dirname(os.path.dirname(__file__)),
            capture_output=True,
            text=True,
            timeout=2,
        )
        if result.returncode == 0:
            return result.stdout.strip()
    except (OSError, subprocess.SubprocessError):
        pass

    # Fallback to build timestamp
    return datetime.now().strftime("%Y%m%d-%H%M%S")


BUILD_HASH = get_build_info()


def create_reorder_coordinator(options: Optional[QueueReorderOptions] = None) -> QueueReorderCoordinator:
    """One coordinator (and plan cache) per process."""
    options = options or load_queue_reorder_options()
    optimizer = CpSatQueueOptimizer(
        OptimizerWeights(
            movement=options.movement_weight,
            spacing=options.spacing_weight,
            round_fairness=options.round_fairness_weight,
        )
    )
    return QueueReorderCoordinator(optimizer, InMemoryReorderPlanCache(), options)


app.state.reorder_coordinator = create_reorder_coordinator()

_cors_origins = [
    "http://localhost:3000",
    "http://127.0.0.1:3000",
]
_extra = os.getenv("CORS_ORIGINS", "")
if _extra:
    _cors_origins.extend(o.strip() for o in _extra.split(",") if o.strip())

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(queue_reorder.router, prefix="/api", tags=["queue-reorder"])


@app.on_event("startup")
def on_startup():
    init_db()
    logger.info("Karaoke Queue Reorder API started (build %s)", BUILD_HASH)


@app.get("/api/health")
def health_check():
    """Diagnostic endpoint to verify which code is running"""
    return {"app_name": "Karaoke Queue Reorder API", "build_hash": BUILD_HASH, "status": "healthy"}
