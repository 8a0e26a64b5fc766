from supabase import create_client, Client
from receipt_learning.config import settings


def get_supabase_client() -> Client:
    """
    Create and return a Supabase client instance.
    Uses service role key so pattern rows can be written for any user,
    falling back to the anon key when no service key is configured.
    """
    supabase: Client = create_client(
        settings.SUPABASE_URL,
        settings.SUPABASE_SERVICE_KEY or settings.SUPABASE_KEY
    )
    return supabase
