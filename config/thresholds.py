# Central place for tuning thresholds. Components take these as constructor
# defaults so tests can pass their own values.

# Clustering
STAGE1_THRESHOLD = 0.85          # T1: tight greedy agglomeration
STAGE2_THRESHOLD = 0.70          # T2: centroid consolidation
STAGE1_MAX_CLUSTER_SIZE = 15
STAGE2_MAX_CLUSTER_SIZE = 100
MERGE_SIMILARITY_THRESHOLD = 0.86  # join an existing cluster / reassign an outlier
PURITY_THRESHOLD = 0.72            # member-to-centroid acceptance
INCREMENTAL_WINDOW_DAYS = 30
TITLE_WEIGHT = 0.7
CONTENT_WEIGHT = 0.3
QUALITY_GOOD = 0.8
QUALITY_ACCEPTABLE = 0.6
INTER_DISTANCE_SAMPLE_CLUSTERS = 20
INTER_DISTANCE_SAMPLE_SPAN = 5

# Vector search
SEARCH_TOP_K = 10
SEARCH_MIN_SIMILARITY = 0.5

# Focus tracking
FOCUS_SEED_INTENSITY = 0.7
FOCUS_REINFORCEMENT_STEP = 0.15
FOCUS_DECAY_FACTOR = 0.9         # per decay unit
FOCUS_DECAY_UNIT_MINUTES = 30
FOCUS_MIN_INTENSITY = 0.3
FOCUS_MAX_POINTS = 15

# Conversation
TOPIC_INTENSITY_STEP = 0.2
MAX_CURRENT_TOPICS = 10

# Personal retrieval
KEYWORD_NODE_LIMIT = 20
PERSONAL_NODE_LIMIT = 8
PERSONAL_EVENT_LIMIT = 5
PERSONAL_RELATION_LIMIT = 5
RETRIEVAL_RELEVANCE_MIN = 0.4
MAX_RETRIEVAL_CONTEXTS = 30
USER_NODE_INDICATORS = {"我", "用户", "个人", "自己", "user", "me", "myself"}
