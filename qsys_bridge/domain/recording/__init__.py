# A recording ends on whichever fires first:
#
#   [duration timer]   [byte cap reached]   [session torn down]
#          \                  |                   /
#           +----------> first completed <-------+
#                              |
#                              v
#                  detach, close sink, summarize
