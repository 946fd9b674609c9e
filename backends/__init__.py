"""
Remote stores for Gist Chat.

Handles:
- Public profile directory (Supabase table or GitHub directory gist)
- Encrypted message storage (Supabase tables or one gist per room)
"""

from .base import ChatMessage, DirectoryStore, MessageStore, Profile, Room
from .gist import GistDirectory, GistMessageStore, GitHubGistClient
from .supabase import SupabaseClient, SupabaseDirectory, SupabaseMessageStore


def create_stores(config) -> tuple[DirectoryStore, MessageStore, list]:
    """
    Build the directory and message stores selected by config.BACKEND.

    Returns:
        Tuple of (directory, message_store, clients_to_close)
    """
    if config.BACKEND == "supabase":
        client = SupabaseClient(config.SUPABASE_URL, config.SUPABASE_ANON_KEY, timeout=config.HTTP_TIMEOUT)
        return SupabaseDirectory(client), SupabaseMessageStore(client), [client]

    if config.BACKEND == "gist":
        client = GitHubGistClient(config.GITHUB_API_URL, config.GITHUB_TOKEN, timeout=config.HTTP_TIMEOUT)
        return (
            GistDirectory(client, config.DIRECTORY_GIST_ID),
            GistMessageStore(client, config.DIRECTORY_GIST_ID),
            [client],
        )

    raise ValueError(f"Unknown backend: {config.BACKEND}")


__all__ = [
    "ChatMessage",
    "DirectoryStore",
    "MessageStore",
    "Profile",
    "Room",
    "GitHubGistClient",
    "GistDirectory",
    "GistMessageStore",
    "SupabaseClient",
    "SupabaseDirectory",
    "SupabaseMessageStore",
    "create_stores",
]
