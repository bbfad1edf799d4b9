from __future__ import annotations

import uvicorn

from tenantgate.apps.api.main import create_app
from tenantgate.core.config import get_settings


def main() -> None:
    # Serve the API with env-driven settings; store backends are chosen by STORE_BACKEND.
    settings = get_settings()
    app = create_app()
    uvicorn.run(app, host=settings.api_host, port=settings.api_port)


if __name__ == "__main__":
    main()
