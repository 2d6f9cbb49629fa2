import asyncio
import os
import sys
import logging
from dotenv import load_dotenv

from src.infrastructure.gitlab_client import DEFAULT_BASE_URL, GitLabRestClient
from src.infrastructure.database import PostgresCatalogRepository
from src.application.catalog_service import CatalogImportService
from src.domain.exceptions import HierarchyCycleError

logger = logging.getLogger(__name__)

def configure_logging(level_name: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level_name.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(message)s",
        handlers=[
            logging.StreamHandler(sys.stdout)
        ]
    )

async def main():
    # Load environment variables from .env file
    load_dotenv()
    configure_logging(os.getenv("LOG_LEVEL", "INFO"))

    gitlab_token = os.getenv("GITLAB_TOKEN")
    db_url = os.getenv("DATABASE_URL")
    gitlab_url = os.getenv("GITLAB_URL", DEFAULT_BASE_URL)
    root_group = os.getenv("GITLAB_ROOT_GROUP") or None

    if not gitlab_token:
        logger.error("GITLAB_TOKEN is not set in the environment.")
        sys.exit(1)

    if not db_url:
        logger.error("DATABASE_URL is not set in the environment.")
        sys.exit(1)

    gitlab_client = GitLabRestClient(token=gitlab_token, base_url=gitlab_url)
    db_repository = PostgresCatalogRepository(db_url=db_url)

    import_service = CatalogImportService(
        gitlab_client=gitlab_client,
        db_repository=db_repository,
    )

    try:
        await import_service.run(root_group=root_group)
    except KeyboardInterrupt:
        logger.info("Import interrupted by user. Exiting gracefully.")
    except HierarchyCycleError as e:
        logger.error(f"Refusing to store groups: {e}")
        sys.exit(1)
    except Exception as e:
        logger.exception(f"An unexpected error occurred: {e}")
        sys.exit(1)

if __name__ == "__main__":
    asyncio.run(main())
