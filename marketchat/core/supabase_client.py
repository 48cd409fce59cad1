import logging
from dotenv import load_dotenv
from supabase import acreate_client, AsyncClient

from marketchat.utils.env_helper import env_none_or_str


load_dotenv()
logger = logging.getLogger(__name__)


supabase_url = env_none_or_str("PUBLIC_SUPABASE_URL")
supabase_key = env_none_or_str("SECRET_API_KEY")

_client: AsyncClient | None = None


async def get_supabase() -> AsyncClient:
    """
    Return the shared async Supabase client, creating it on first use.

    The async client is the one that carries Realtime channels, so PostgREST
    reads/writes and subscriptions all go through the same instance.
    """
    global _client
    if _client is None:
        if not supabase_url or not supabase_key:
            raise RuntimeError("PUBLIC_SUPABASE_URL and SECRET_API_KEY must be set.")
        _client = await acreate_client(supabase_url, supabase_key)
        logger.info("Supabase client created for %s", supabase_url)
    return _client
