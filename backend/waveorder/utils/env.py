import logging

from dotenv import load_dotenv

logger = logging.getLogger(__name__)


def load_env_file() -> None:
    """Load variables from a local .env file without overwriting the environment.

    WHAT:
        Reads backend/.env into os.environ. Existing variables win.
    WHY:
        Local development can keep secrets (DATABASE_URL, STRIPE_*) in a file
        while deployed environments inject them directly.
    """
    loaded = load_dotenv(override=False)

    if loaded:
        logger.info("Loaded local .env file (existing variables were NOT overwritten)")
    else:
        logger.debug("No local .env file found or loaded")
