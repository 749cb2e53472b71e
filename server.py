import uvicorn
from loguru import logger

from clinicflow.api.app import create_app
from clinicflow.config import AppConfig
from clinicflow.factory import build_clinic_service


def main() -> None:
    """Serve the scheduling API and run the reminder loop alongside it."""
    config = AppConfig()
    service = build_clinic_service(config)
    app = create_app(service, config)

    logger.info(
        "Starting clinicflow on {}:{} (timezone={})",
        config.server.host,
        config.server.port,
        config.clinic_timezone,
    )
    uvicorn.run(app, host=config.server.host, port=config.server.port)


if __name__ == "__main__":
    main()
