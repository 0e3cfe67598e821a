"""Run the Palchat service with uvicorn: ``python -m palchat``."""
import uvicorn

from palchat.config import get_config


def main() -> None:
    config = get_config()
    uvicorn.run(
        "palchat.main:app",
        host=config.server.host,
        port=config.server.port,
        reload=config.server.reload,
        log_level=config.server.log_level,
    )


if __name__ == "__main__":
    main()
