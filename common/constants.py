DEFAULT_ENV = "dev"
SERVICE_NAME = "topology"  # The application name
DEFAULT_CONFIG_FILE = "topology.yaml"

# Address planning
MAX_ZONES = 3
DEFAULT_SUBNET_PREFIX = 20
ANY_IPV4_CIDR = "0.0.0.0/0"

# Security boundaries
HTTP_PORT = 80
HTTPS_PORT = 443
APP_PORT = 8080
SSH_PORT = 22
MYSQL_PORT = 3306
ALL_TCP_FROM = 0
ALL_TCP_TO = 65535

# Data tier
DB_ENGINE = "mysql"
DB_ENGINE_VERSION = "8.0"
DB_PARAMETER_FAMILY = "mysql8.0"
DB_INSTANCE_CLASS = "db.t3.micro"
DB_ALLOCATED_STORAGE = 10
DB_NAME = "csye6225"
DB_USERNAME = "csye6225"
KEY_VALUE_ATTRIBUTES = ("ID", "Name", "Email", "DownloadStatus", "UploadPath")
KEY_VALUE_CAPACITY = 5

# Compute tier
INSTANCE_TYPE = "t2.micro"
SCALING_MIN = 1
SCALING_MAX = 3
SCALING_DESIRED = 1
SCALING_COOLDOWN = 60
HEALTH_CHECK_GRACE_PERIOD = 400
CPU_HIGH_THRESHOLD = 5.0
CPU_LOW_THRESHOLD = 3.0
ALARM_PERIOD = 60
ALARM_EVALUATION_PERIODS = 2
HEALTH_CHECK_PATH = "/healthz"
SSL_POLICY = "ELBSecurityPolicy-2016-08"
BOOTSTRAP_CONFIG_FILE = "/opt/dbconfig.yaml"
CLOUDWATCH_AGENT_CONFIG = "file:/opt/cloudwatch-config.json"

# Serverless tier
FUNCTION_RUNTIME = "provided.al2023"
FUNCTION_HANDLER = "bootstrap"
FUNCTION_TIMEOUT = 60
SERVICE_ACCOUNT_KEY_TYPE = "TYPE_X509_PEM_FILE"
BUCKET_ROLE = "roles/storage.objectAdmin"

# Managed policies
POLICY_CLOUDWATCH_AGENT = "arn:aws:iam::aws:policy/CloudWatchAgentServerPolicy"
POLICY_LAMBDA_FULL_ACCESS = "arn:aws:iam::aws:policy/AWSLambda_FullAccess"
POLICY_LAMBDA_BASIC_EXECUTION = (
    "arn:aws:iam::aws:policy/service-role/AWSLambdaBasicExecutionRole"
)
POLICY_DYNAMODB_FULL_ACCESS = "arn:aws:iam::aws:policy/AmazonDynamoDBFullAccess"
