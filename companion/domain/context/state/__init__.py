# State = what the conversation is doing right now.

# Whether a turn is in flight (single writer per turn)

# Which stage the turn has reached (scanning, processing, speaking)

# How the last turn ended
