from __future__ import annotations

import uvicorn

from harbinger.config import get_settings


def main() -> None:
    settings = get_settings()
    uvicorn.run(
        "harbinger.app:create_app",
        factory=True,
        host="0.0.0.0",
        port=settings.server_port,
        log_config=None,
    )


if __name__ == "__main__":
    main()
