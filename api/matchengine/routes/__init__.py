from fastapi import FastAPI

from .matching import router as matching_router, sweep_router as matching_sweep_router


def include_modular_routers(app: FastAPI) -> None:
    app.include_router(matching_router, tags=["matching"])
    app.include_router(matching_sweep_router, tags=["matching"])


__all__ = ["include_modular_routers"]
