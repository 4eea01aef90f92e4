from __future__ import annotations

import uvicorn

from gympass.apps.api.main import create_app
from gympass.core.config import get_settings


def main() -> None:
    # Serve the API with env-driven settings; the port matches tenant URLs built for members.
    settings = get_settings()
    app = create_app(settings)
    uvicorn.run(app, host="0.0.0.0", port=int(settings.tenant_port or 4000))


if __name__ == "__main__":
    main()
