import os
import uuid

REDIS_HOST = os.getenv("REDIS_HOST", "localhost")
REDIS_PORT = int(os.getenv("REDIS_PORT", 6379))
REDIS_PASSWORD = os.getenv("REDIS_PASSWORD", None)
REDIS_DB = int(os.getenv("REDIS_DB", 0))
REDIS_TIMEOUT_SECONDS = float(os.getenv("REDIS_TIMEOUT_SECONDS", 5.0))

REDIS_URL = f"redis://:{REDIS_PASSWORD}@{REDIS_HOST}:{REDIS_PORT}/{REDIS_DB}" if REDIS_PASSWORD else f"redis://{REDIS_HOST}:{REDIS_PORT}/{REDIS_DB}"

# Identifies this process as the owner of the connections it accepts
SERVER_ID = os.getenv("SERVER_ID") or uuid.uuid4().hex

ACTIVEMQ_HOST = os.getenv("ACTIVEMQ_HOST", "localhost")
ACTIVEMQ_PORT = int(os.getenv("ACTIVEMQ_PORT", 61613))
ACTIVEMQ_USERNAME = os.getenv("ACTIVEMQ_USERNAME", "admin")
ACTIVEMQ_PASSWORD = os.getenv("ACTIVEMQ_PASSWORD", "admin")

QUEUE_CHAT_MESSAGE = os.getenv("QUEUE_CHAT_MESSAGE", "ws.chat-message")
QUEUE_NOTIFICATION = os.getenv("QUEUE_NOTIFICATION", "ws.notification")

QUEUE_CONNECT_RETRIES = int(os.getenv("QUEUE_CONNECT_RETRIES", 5))
QUEUE_RETRY_DELAY_SECONDS = float(os.getenv("QUEUE_RETRY_DELAY_SECONDS", 3.0))
QUEUE_RETRY_BACKOFF = os.getenv("QUEUE_RETRY_BACKOFF", "fixed")  # fixed | exponential
QUEUE_CONNECT_TIMEOUT_SECONDS = float(os.getenv("QUEUE_CONNECT_TIMEOUT_SECONDS", 10.0))

WS_CHANNEL_MESSAGE = os.getenv("WS_CHANNEL_MESSAGE", "new-message")
WS_CHANNEL_NOTIFICATION = os.getenv("WS_CHANNEL_NOTIFICATION", "new-notification")

HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", 3333))
ALLOWED_ORIGINS = [origin.strip() for origin in os.getenv("ALLOWED_ORIGINS", "*").split(",") if origin.strip()]
