"""Entry point for serving flowrunner with uvicorn."""

from .config import load_config
from .factory import create_app

config = load_config()

# Create FastAPI application
app = create_app(config)


def run():
    """Run the API server."""
    import uvicorn
    uvicorn.run("flowrunner.main:app", **config.get_uvicorn_config())


if __name__ == "__main__":
    run()
