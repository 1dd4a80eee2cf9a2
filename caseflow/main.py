from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from caseflow.api.routers.production import router as production_router

app = FastAPI(title="caseflow API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"], # For development; restrict to the operator UI origin in production
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(production_router)

@app.get("/health")
def health():
    return {"status": "up"}
