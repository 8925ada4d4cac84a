"""Media service client: resolves stored media ids to Twitter media ids."""

from action_processor.integrations.media.client import MediaClient, is_gcs_media_id

__all__ = ["MediaClient", "is_gcs_media_id"]
