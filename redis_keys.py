REDIS_USER_CONNECTIONS_KEY = "user:{user_id}:connections" # set of serialized Connection
REDIS_SOCKET_USER_KEY = "socket:{connection_id}:user" # connection id -> owning user id
REDIS_PROCESS_CONNECTIONS_KEY = "process:{process_id}:connections" # set of "{user_id}|{connection_id}"
REDIS_ROOM_KEY = "room:{room_id}" # serialized Room
REDIS_ROOM_USERS_KEY = "room:{room_id}:users" # set of user ids
REDIS_USER_ROOMS_KEY = "user:{user_id}:rooms" # set of room ids

# Pub/sub channels used by the transport to reach other processes
REDIS_GROUP_CHANNEL = "relay:group:{group}" # room fan-out
REDIS_PROCESS_CHANNEL = "relay:process:{process_id}" # direct emits and live joins for one process

# **Example `user:{id}:connections` member**
# - `{"userId": "alice", "connectionId": "3f2c...", "ownerProcessId": "9ab1...", "establishedAt": 1735689600000}`

# **Example `room:{id}` value**
# - `{"id": "private-room_alice_bob", "type": "private", "metadata": {}}`
