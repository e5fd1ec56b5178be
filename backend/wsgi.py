import logging

from backend.app import create_app
from backend.config import Settings

settings = Settings.from_env()

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)

app = create_app(settings)


if __name__ == "__main__":
    app.logger.info("Server running on port %s", settings.port)
    app.run(host="0.0.0.0", port=settings.port)
