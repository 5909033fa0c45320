"""Run the phone auth backend: python -m phonechat"""

import uvicorn

from phonechat.config import settings


def main():
    uvicorn.run(
        "phonechat.main:app",
        host="0.0.0.0",
        port=settings.PORT,
        log_level=settings.LOG_LEVEL.lower(),
    )


if __name__ == "__main__":
    main()
