from .supabase_client import get_client, reset_client
