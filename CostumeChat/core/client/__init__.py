"""
Realtime messaging client: connection lifecycle, local stores and outbound dispatch.

Import the pieces from their modules, e.g.
``from CostumeChat.core.client.chat_client import ChatClient``.
"""
