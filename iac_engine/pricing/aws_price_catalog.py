"""
Static on-demand AWS price catalog (us-east-1, USD).

Hourly rates for instance classes and per GB-month rates for storage.
"""
from typing import Dict


# EC2 instance hourly prices
INSTANCE_PRICE_CATALOG: Dict[str, float] = {
    # t3
    "t3.nano": 0.0052,
    "t3.micro": 0.0104,
    "t3.small": 0.0208,
    "t3.medium": 0.0416,
    "t3.large": 0.0832,
    "t3.xlarge": 0.1664,
    "t3.2xlarge": 0.3328,
    # t3a
    "t3a.nano": 0.0047,
    "t3a.micro": 0.0094,
    "t3a.small": 0.0188,
    "t3a.medium": 0.0376,
    "t3a.large": 0.0752,
    "t3a.xlarge": 0.1504,
    "t3a.2xlarge": 0.3008,
    # t4g (Graviton)
    "t4g.nano": 0.0042,
    "t4g.micro": 0.0084,
    "t4g.small": 0.0168,
    "t4g.medium": 0.0336,
    "t4g.large": 0.0672,
    "t4g.xlarge": 0.1344,
    "t4g.2xlarge": 0.2688,
    # m5
    "m5.large": 0.096,
    "m5.xlarge": 0.192,
    "m5.2xlarge": 0.384,
    # m6i
    "m6i.large": 0.096,
    "m6i.xlarge": 0.192,
    "m6i.2xlarge": 0.384,
    # m6g (Graviton)
    "m6g.medium": 0.0385,
    "m6g.large": 0.077,
    "m6g.xlarge": 0.154,
    "m6g.2xlarge": 0.308,
    # m7g (Graviton3)
    "m7g.medium": 0.0408,
    "m7g.large": 0.0816,
    "m7g.xlarge": 0.1632,
    "m7g.2xlarge": 0.3264,
    # c5
    "c5.large": 0.085,
    "c5.xlarge": 0.17,
    "c5.2xlarge": 0.34,
    # c6i
    "c6i.large": 0.085,
    "c6i.xlarge": 0.17,
    "c6i.2xlarge": 0.34,
    # c6g (Graviton)
    "c6g.medium": 0.034,
    "c6g.large": 0.068,
    "c6g.xlarge": 0.136,
    "c6g.2xlarge": 0.272,
    # c7g (Graviton3)
    "c7g.medium": 0.0363,
    "c7g.large": 0.0725,
    "c7g.xlarge": 0.145,
    "c7g.2xlarge": 0.29,
    # r5
    "r5.large": 0.126,
    "r5.xlarge": 0.252,
    "r5.2xlarge": 0.504,
    # r6i
    "r6i.large": 0.126,
    "r6i.xlarge": 0.252,
    "r6i.2xlarge": 0.504,
    # r6g (Graviton)
    "r6g.medium": 0.0504,
    "r6g.large": 0.1008,
    "r6g.xlarge": 0.2016,
    "r6g.2xlarge": 0.4032,
}

# RDS instance hourly prices for MySQL; other engines scale by RDS_ENGINE_MULTIPLIERS
RDS_PRICE_CATALOG: Dict[str, float] = {
    "db.t3.micro": 0.017,
    "db.t3.small": 0.034,
    "db.t3.medium": 0.068,
    "db.t3.large": 0.136,
    "db.t3.xlarge": 0.272,
    "db.t3.2xlarge": 0.544,
    "db.t4g.micro": 0.016,
    "db.t4g.small": 0.032,
    "db.t4g.medium": 0.065,
    "db.t4g.large": 0.129,
    "db.t4g.xlarge": 0.258,
    "db.t4g.2xlarge": 0.516,
    "db.m5.large": 0.115,
    "db.m5.xlarge": 0.230,
    "db.m5.2xlarge": 0.460,
    "db.m6g.large": 0.105,
    "db.m6g.xlarge": 0.210,
    "db.m6g.2xlarge": 0.420,
    "db.r5.large": 0.145,
    "db.r5.xlarge": 0.290,
    "db.r5.2xlarge": 0.580,
    "db.r6g.large": 0.130,
    "db.r6g.xlarge": 0.260,
    "db.r6g.2xlarge": 0.520,
}

RDS_ENGINE_MULTIPLIERS: Dict[str, float] = {
    "mysql": 1.0,
    "mariadb": 1.0,
    "postgres": 1.08,
    "aurora-mysql": 1.15,
    "aurora-postgresql": 1.18,
    "oracle-ee": 2.8,
    "oracle-se2": 1.6,
    "sqlserver-ee": 3.2,
    "sqlserver-se": 1.9,
    "sqlserver-ex": 1.0,
    "sqlserver-web": 1.2,
}

# Price List API databaseEngine filter values
RDS_ENGINE_API_NAMES: Dict[str, str] = {
    "postgres": "PostgreSQL",
    "mysql": "MySQL",
    "mariadb": "MariaDB",
    "aurora-mysql": "Aurora MySQL",
    "aurora-postgresql": "Aurora PostgreSQL",
    "oracle-ee": "Oracle",
    "oracle-se2": "Oracle",
    "sqlserver-ee": "SQL Server",
    "sqlserver-se": "SQL Server",
    "sqlserver-ex": "SQL Server",
    "sqlserver-web": "SQL Server",
}

# Per GB-month
STORAGE_PRICES: Dict[str, float] = {
    "s3_standard": 0.023,
    "ebs_gp3": 0.08,
    "ebs_gp2": 0.10,
    "ebs_io1": 0.125,
    "ebs_io2": 0.125,
    "ebs_st1": 0.045,
    "ebs_sc1": 0.015,
    "ebs_standard": 0.05,
    "rds_storage": 0.115,
    "dynamodb_storage": 0.25,
}

# ElastiCache node-hour prices
ELASTICACHE_PRICE_CATALOG: Dict[str, float] = {
    "cache.t3.micro": 0.017,
    "cache.t3.small": 0.034,
    "cache.t3.medium": 0.068,
    "cache.t4g.micro": 0.016,
    "cache.t4g.small": 0.032,
    "cache.t4g.medium": 0.065,
    "cache.m5.large": 0.124,
    "cache.m5.xlarge": 0.248,
    "cache.m6g.large": 0.113,
    "cache.m6g.xlarge": 0.226,
    "cache.r5.large": 0.166,
    "cache.r5.xlarge": 0.332,
    "cache.r6g.large": 0.150,
    "cache.r6g.xlarge": 0.300,
}

# Relative size of an instance within its family, used by the heuristic
SIZE_MULTIPLIERS: Dict[str, float] = {
    "nano": 0.25,
    "micro": 0.5,
    "small": 1,
    "medium": 2,
    "large": 4,
    "xlarge": 8,
    "2xlarge": 16,
    "4xlarge": 32,
    "8xlarge": 64,
    "12xlarge": 96,
    "16xlarge": 128,
    "24xlarge": 192,
}
HEURISTIC_UNIT_PRICE = 0.012

PROVISIONED_IOPS_PRICE = 0.065  # per IOPS-month, io1/io2
DYNAMODB_WCU_HOURLY = 0.00065
DYNAMODB_RCU_HOURLY = 0.00013
FARGATE_VCPU_HOURLY = 0.04048
FARGATE_GB_HOURLY = 0.004445

# Flat monthly figures for resources billed mostly on usage
FLAT_MONTHLY_COSTS: Dict[str, float] = {
    "aws_s3_bucket": 0.50,
    "aws_eip": 3.65,
    "aws_cloudfront_distribution": 1.0,
    "aws_route53_zone": 0.50,
    "aws_api_gateway_rest_api": 3.50,
    "aws_apigatewayv2_api": 3.50,
    "aws_kms_key": 1.0,
    "aws_secretsmanager_secret": 0.40,
    "aws_cloudwatch_log_group": 0.50,
    "aws_eks_cluster": 0.10 * 730,
    "aws_ecs_cluster": 0.0,
    "aws_sqs_queue": 0.0,
    "aws_sns_topic": 0.0,
    "aws_lambda_function": 0.0,
}
