# This module handles Context engineering for one conversation turn

# +---------------------+
# |      Memory         |   (Persistent, key/value namespace)
# |---------------------|
# | User facts          |
# | Last 6 turns        |
# | Credential          |
# +---------------------+

# +---------------------+
# |      State          |   (Current turn, in-process)
# |---------------------|
# | In-flight flag      |
# | Status shown to UI  |
# +---------------------+

#    \    /
#     \  /
#      \/
# +------------------------------+
# |           Context            |   (Assembled fresh per turn)
# |------------------------------|
# | Persona tone (from facts)    |
# | Page snippet (if triggered)  |
# | History window               |
# | Current utterance            |
# +------------------------------+
#         |
#         v
#   [completion endpoint]
