"""ASGI entry point for the automation engine.

Run with ``uvicorn automation_engine.main:app`` or through the
``automation-engine run`` command.
"""

from .config import load_config
from .factory import create_app

config = load_config()
app = create_app(config)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, **config.get_uvicorn_config())
