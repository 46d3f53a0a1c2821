# Connection lifecycle
#
#   disconnected --connect()--> connecting --ok--> connected
#        ^                          |                  |
#        |<--------- failure -------+                  | disconnected / error
#        |                                             v
#        |<-- backoff exhausted -- reconnecting <------+
#                                   (1, 2, 4, 8, 16 s)
