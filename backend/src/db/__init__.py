"""Database clients for Nudge."""

from src.db.supabase import SupabaseClient

__all__ = ["SupabaseClient"]
