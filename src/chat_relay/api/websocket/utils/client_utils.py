"""
Client Utilities
================
Helper functions for extracting client information from relay connections.

Handles both the websockets asyncio API (`connection.request.headers`) and
objects exposing the older `request_headers` attribute, which keeps test
doubles simple.
"""

from typing import Any, Dict


class ClientUtils:
    """
    Utility functions for client information extraction.

    All methods are static - no state needed.
    """

    @staticmethod
    def get_client_ip(websocket, logger=None) -> str:
        """
        Extract client IP address from a connection.

        Returns:
            Client IP address string, or "unknown" when unavailable

        Example:
            >>> from unittest.mock import Mock
            >>> mock_ws = Mock()
            >>> mock_ws.remote_address = ("192.168.1.1", 8080)
            >>> ClientUtils.get_client_ip(mock_ws)
            '192.168.1.1'
        """
        try:
            remote_address = getattr(websocket, 'remote_address', None)
            if remote_address:
                # remote_address is typically a tuple (host, port)
                if isinstance(remote_address, tuple):
                    return remote_address[0]
                return str(remote_address)
        except (AttributeError, TypeError) as e:
            if logger:
                logger.debug("client_utils.ip_extraction_attribute_error", {
                    "error": str(e),
                    "websocket_type": type(websocket).__name__
                })

        return "unknown"

    @staticmethod
    def _request_headers(websocket) -> Any:
        request = getattr(websocket, 'request', None)
        if request is not None and getattr(request, 'headers', None) is not None:
            return request.headers
        return getattr(websocket, 'request_headers', None)

    @staticmethod
    def build_connection_metadata(websocket, logger=None) -> Dict[str, str]:
        """
        Build connection metadata dictionary.

        Returns:
            Metadata dictionary with ip_address, user_agent, path

        Example:
            >>> from unittest.mock import Mock
            >>> mock_ws = Mock(spec=["remote_address", "request_headers"])
            >>> mock_ws.remote_address = ("192.168.1.1", 50123)
            >>> mock_ws.request_headers = {"User-Agent": "Mozilla/5.0"}
            >>> ClientUtils.build_connection_metadata(mock_ws)["user_agent"]
            'Mozilla/5.0'
        """
        user_agent = "unknown"
        path = ""

        try:
            headers = ClientUtils._request_headers(websocket)
            if headers is not None and hasattr(headers, 'get'):
                user_agent = headers.get("User-Agent", "unknown") or "unknown"

            request = getattr(websocket, 'request', None)
            if request is not None and getattr(request, 'path', None):
                path = request.path
            elif getattr(websocket, 'path', None):
                path = websocket.path
        except (AttributeError, TypeError) as e:
            if logger:
                logger.debug("client_utils.metadata_extraction_error", {
                    "error": str(e),
                    "websocket_type": type(websocket).__name__
                })

        return {
            "ip_address": ClientUtils.get_client_ip(websocket, logger),
            "user_agent": user_agent,
            "path": path
        }
