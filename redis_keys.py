REDIS_MESSAGE_KEY = "message:{room_token}:{message_id}" # one stored message, expires with the message ttl
REDIS_ROOM_MESSAGES_PATTERN = "message:{room_token}:*" # scan pattern for a room's history
REDIS_ALL_MESSAGES_PATTERN = "message:*" # scan pattern across every room
REDIS_TEST_KEY = "test:{stamp}" # throwaway key for the store self test

# **Stored message value**
# - JSON of the message as broadcast (image messages carry metadata only, never bytes)
# - `ttl` = seconds, the key expiry is set to the same value
# - burn-after-reading messages (`ttl` = 0) are never stored
