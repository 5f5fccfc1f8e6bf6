from functools import lru_cache

from supabase import Client, create_client

from .config import Settings, get_settings


def create_supabase(settings: Settings) -> Client:
    if not settings.supabase_url or not settings.supabase_key:
        raise RuntimeError("SUPABASE_URL and SUPABASE_SERVICE_KEY must be set to use the supabase catalog store.")
    url = str(settings.supabase_url)
    if "your-project.supabase.co" in url:
        raise RuntimeError(
            "SUPABASE_URL in .env is still the placeholder (your-project). "
            "Fill in your real project URL and service key."
        )
    return create_client(url, settings.supabase_key)


@lru_cache()
def get_supabase() -> Client:
    return create_supabase(get_settings())
