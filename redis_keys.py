REDIS_VIDEO_CHANNEL = "video:channel:{video_id}" # video id - pub/sub channel name
REDIS_VIDEO_CHANNEL_PATTERN = "video:channel:*" # every room, used by the listener

# **Envelope published on `video:channel:{video_id}`**
# - `instance_id` = relay process that published it (receivers skip their own)
# - `video_id` = normalized room identifier
# - `message` = outbound frame exactly as sent to local members
