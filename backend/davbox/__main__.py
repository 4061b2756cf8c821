"""Run the server: python -m davbox"""

import uvicorn

from davbox.config import get_settings


def main() -> None:
    settings = get_settings()
    uvicorn.run("davbox.main:app", host="0.0.0.0", port=settings.port, proxy_headers=True)


if __name__ == "__main__":
    main()
