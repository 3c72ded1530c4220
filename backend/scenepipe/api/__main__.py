"""API server entry point for python -m scenepipe.api"""
import uvicorn
from scenepipe.config import get_settings

if __name__ == "__main__":
    settings = get_settings()
    uvicorn.run(
        "scenepipe.api.app:app",
        host=settings.server.host,
        port=settings.server.port,
        reload=False,
    )
