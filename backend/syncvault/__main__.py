"""Run the server: python -m syncvault."""

import uvicorn

from syncvault.config import get_settings


def main() -> None:
    settings = get_settings()
    uvicorn.run("syncvault.main:app", host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
