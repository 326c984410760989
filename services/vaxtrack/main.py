# Entrypoint for `uvicorn main:app`; the application lives in services.vaxtrack.app.

from services.vaxtrack.app import app  # noqa: F401
