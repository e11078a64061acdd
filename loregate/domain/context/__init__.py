# This module handles context engineering for NPC dialogue

# +---------------------+
# |    Memory store     |   (Authoritative, external, read-only here)
# |---------------------|
# | Canonical facts     |
# | World state         |
# | Episodic memories   |
# | Beliefs             |
# +---------------------+
#         |
#         v   retrieval: filter, score, strict total order, cap
# +------------------------------+
# |        State snapshot        |   (Immutable, one interaction)
# |------------------------------|
# | Player input, logical time   |
# | Retrieved memory excerpts    |
# | Dialogue history             |
# | Constraints                  |
# +------------------------------+
#         |
#         v   bounding: counts + character budget
# +------------------------------+
# |        Working memory        |   (Ephemeral, one attempt)
# +------------------------------+
#         |
#         v
#   [Prompt assembly / generation]
