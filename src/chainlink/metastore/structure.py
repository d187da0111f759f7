CHAINS = "/chains/states"
LIFECYCLE_QUEUE = "/chains/lifecycle"
EDGE_QUEUES = "/edge/queues"
LOCKS = "/locks"


BASE_STRUCTURE = [
    CHAINS,
    LIFECYCLE_QUEUE,
    EDGE_QUEUES,
    LOCKS,
]
