"""
Constants for the messaging client: wire event names, reconnect policy and timeouts.
"""

# Inbound events (server -> client)
EVENT_WELCOME = "welcome"
EVENT_ONLINE_USERS = "onlineUsers"
EVENT_NEW_MESSAGE = "newMessage"
EVENT_TYPING_STATUS = "userTypingStatus"
EVENT_MESSAGE_DELIVERED = "messageDelivered"
EVENT_MESSAGE_READ = "messageRead"
EVENT_MESSAGE_ERROR = "messageError"
EVENT_PONG = "pong"

# Outbound events (client -> server)
EVENT_SEND_MESSAGE = "sendMessage"
EVENT_USER_TYPING = "userTyping"
EVENT_PING = "ping"

# Observer events published by the client
STATE_CHANGED = "state_changed"
WELCOME_RECEIVED = "welcome"
MESSAGE_RECEIVED = "message_received"
MESSAGE_DELIVERED = "message_delivered"
MESSAGE_READ = "message_read"
MESSAGE_ERROR = "message_error"
PONG_RECEIVED = "pong"
CONVERSATION_CHANGED = "conversation_changed"
PRESENCE_CHANGED = "presence_changed"
TYPING_CHANGED = "typing_changed"

# Reconnection settings (capped exponential backoff)
MAX_RECONNECT_ATTEMPTS = 5
RECONNECT_DELAY_SECONDS = 1.0
RECONNECT_MAX_DELAY_SECONDS = 30.0

# Timeout settings
CONNECT_TIMEOUT_SECONDS = 20
API_TIMEOUT_SECONDS = 30

# Prefix of client-generated message ids; never issued by the server
CLIENT_ID_PREFIX = "tmp-"
