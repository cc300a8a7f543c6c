"""ltpflow - index and option LTP ingestion into PostgreSQL"""

__version__ = "0.1.0"

def main() -> None:
    """Main entry point for the application"""
    import logging
    import uvicorn
    from .config import IngestConfig

    config = IngestConfig.from_env()
    logging.basicConfig(
        level=config.log_level.upper(),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    # uvicorn's SIGINT/SIGTERM handling runs the lifespan shutdown, which drains the batch writer
    uvicorn.run("ltpflow.app:app", host=config.host, port=config.port)
