"""
FastAPI Main Application
"""
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import logging
import os
from dotenv import load_dotenv

from routers import stac
from services.stac_service import get_stac_service

load_dotenv()

logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))
logger = logging.getLogger(__name__)

# Create FastAPI app
app = FastAPI(
    title="STAC Security Scenario Matching Service",
    description="Matches document text against the STAC security scenario knowledge base and derives "
                "security requirements, test cases and threat summaries",
    version="1.0.0"
)

# CORS middleware
cors_origins = os.getenv("CORS_ORIGINS")
if cors_origins:
    allowed_origins = [origin.strip() for origin in cors_origins.split(",")]
else:
    allowed_origins = ["http://localhost:5173", "http://localhost:5174"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(stac.router)


@app.on_event("startup")
async def startup_event():
    service = get_stac_service()
    loaded = await service.load_knowledge_base()
    await service.start()
    if loaded:
        logger.info(f"STAC knowledge base ready: {len(service.get_available_scenarios())} scenarios")
    else:
        logger.warning("STAC knowledge base could not be loaded, serving fallback scenarios")


@app.on_event("shutdown")
async def shutdown_event():
    await get_stac_service().cleanup()


@app.get("/health")
async def health_check():
    service = get_stac_service()
    return {
        "status": "healthy",
        "version": "1.0.0",
        "knowledge_base_loaded": service.is_knowledge_base_loaded(),
        "fallback_mode": service.is_fallback_mode(),
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
