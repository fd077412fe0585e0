REDIS_ROOM_KEY = "room:{slug}" # room id - JSON room record with TTL
REDIS_ROOM_KEY_PATTERN = "room:*"
ROOM_TOPIC = "room_{slug}" # room id - pub/sub channel name, shared by the in-process broker

# **`room:{id}` record fields**
# - `id` = `{roomId}`
# - `owner_token` = owner secret
# - `owner_name` = display name of the owner
# - `participants` = [{token, name, joined_at}] in join order
# - `created_at` = ISO timestamp (UTC), fixed age for expiry
# - `last_selection` = {selected_at, requested_count, selected_names} or null


def room_key(room_id: str) -> str:
    return REDIS_ROOM_KEY.format(slug=room_id)


def room_topic(room_id: str) -> str:
    return ROOM_TOPIC.format(slug=room_id)
