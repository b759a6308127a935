"""Run the API with uvicorn: python -m violet_api"""

import uvicorn

from violet_api.config import settings


def main() -> None:
    uvicorn.run(
        "violet_api.main:app",
        host="0.0.0.0",
        port=settings.PORT,
        log_config=None,
    )


if __name__ == "__main__":
    main()
