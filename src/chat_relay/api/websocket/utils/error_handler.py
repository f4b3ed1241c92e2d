"""
Error Handler Utility
=====================
Error reply frames for the live protocol.

Only undecodable frames are answered; every other invalid frame is dropped
without a reply. Keeping the reply shapes here leaves one place to change
if that policy is ever widened.
"""

from typing import Any, Dict, Optional


class ErrorHandler:
    """
    Error reply generator.

    All methods return the dict to send to the client, or None when the
    failure is answered with silence.
    """

    INVALID_JSON = "Invalid JSON"

    def __init__(self, logger=None):
        """
        Initialize ErrorHandler.

        Args:
            logger: Optional logger instance for error logging
        """
        self.logger = logger

    def invalid_json(self, client_id: str, reason: str = "") -> Dict[str, Any]:
        """
        Reply for a frame that is not valid JSON.

        Example:
            >>> ErrorHandler().invalid_json("client_1")
            {'error': 'Invalid JSON'}
        """
        if self.logger:
            self.logger.debug("error_handler.invalid_json", {
                "client_id": client_id,
                "reason": reason
            })
        return {"error": self.INVALID_JSON}

    def invalid_frame(self, client_id: str, field: str, reason: str) -> Optional[Dict[str, Any]]:
        """Well-formed JSON that is not a usable frame: logged, not answered."""
        if self.logger:
            self.logger.debug("error_handler.frame_dropped", {
                "client_id": client_id,
                "field": field,
                "reason": reason
            })
        return None

    def not_joined(self, client_id: str) -> Optional[Dict[str, Any]]:
        """Content frame before any join: logged, not answered."""
        if self.logger:
            self.logger.debug("error_handler.message_before_join", {
                "client_id": client_id
            })
        return None
