"""
Resource discovery for a connected account.

Enumerates the resource types we track, one paginated listing per type.
Each type is independent: a listing that fails (missing permission, service
not enabled in the region) is logged and skipped.
"""
from typing import Any, Callable, Dict, List, NamedTuple, Optional, Tuple
from datetime import datetime
import logging

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from iac_engine.domain.cloud_models import CloudResource
from iac_engine.services.aws_sessions import AWSSessionFactory, GLOBAL_SERVICES, error_code


logger = logging.getLogger(__name__)


def name_from_tags(tags: Optional[List[Dict[str, str]]]) -> Optional[str]:
    """Value of the 'Name' tag, if any."""
    for tag in tags or []:
        if tag.get("Key") == "Name":
            return tag.get("Value")
    return None


def _json_safe(metadata: Dict[str, Any]) -> Dict[str, Any]:
    return {
        key: value.isoformat() if isinstance(value, datetime) else value
        for key, value in metadata.items()
        if value is not None
    }


class Listing(NamedTuple):
    """How to enumerate one resource type."""
    service: str
    operation: str
    expression: str  # paginator search expression (a plain key for non-paginated calls)
    record: Callable[[Dict[str, Any]], Tuple[str, Optional[str], Dict[str, Any]]]
    params: Dict[str, Any] = {}


def _instance(item):
    return item["InstanceId"], name_from_tags(item.get("Tags")), {
        "instance_type": item.get("InstanceType"),
        "state": item.get("State", {}).get("Name"),
        "private_ip": item.get("PrivateIpAddress"),
        "public_ip": item.get("PublicIpAddress"),
        "vpc_id": item.get("VpcId"),
    }


def _db_instance(item):
    return item["DBInstanceIdentifier"], item["DBInstanceIdentifier"], {
        "instance_class": item.get("DBInstanceClass"),
        "engine": item.get("Engine"),
        "allocated_storage": item.get("AllocatedStorage"),
        "multi_az": item.get("MultiAZ"),
        "status": item.get("DBInstanceStatus"),
    }


def _arn_name(arn: str) -> str:
    return arn.rsplit("/", 1)[-1].rsplit(":", 1)[-1]


LISTINGS: Dict[str, Listing] = {
    "vpc": Listing("ec2", "describe_vpcs", "Vpcs", lambda item: (
        item["VpcId"], name_from_tags(item.get("Tags")),
        {"cidr_block": item.get("CidrBlock"), "is_default": item.get("IsDefault")},
    )),
    "subnet": Listing("ec2", "describe_subnets", "Subnets", lambda item: (
        item["SubnetId"], name_from_tags(item.get("Tags")),
        {"vpc_id": item.get("VpcId"), "cidr_block": item.get("CidrBlock"),
         "availability_zone": item.get("AvailabilityZone")},
    )),
    "ec2_instance": Listing(
        "ec2", "describe_instances", "Reservations[].Instances[]", _instance,
        {"Filters": [{"Name": "instance-state-name", "Values": ["pending", "running", "stopping", "stopped"]}]},
    ),
    "security_group": Listing("ec2", "describe_security_groups", "SecurityGroups", lambda item: (
        item["GroupId"], item.get("GroupName"),
        {"vpc_id": item.get("VpcId"), "description": item.get("Description"),
         "ingress_rules": len(item.get("IpPermissions", []))},
    )),
    "rds_instance": Listing("rds", "describe_db_instances", "DBInstances", _db_instance),
    "s3_bucket": Listing("s3", "list_buckets", "Buckets", lambda item: (
        item["Name"], item["Name"], {"created_at": item.get("CreationDate")},
    )),
    "iam_user": Listing("iam", "list_users", "Users", lambda item: (
        item["UserName"], item["UserName"],
        {"arn": item.get("Arn"), "password_last_used": item.get("PasswordLastUsed")},
    )),
    "lambda_function": Listing("lambda", "list_functions", "Functions", lambda item: (
        item["FunctionName"], item["FunctionName"],
        {"runtime": item.get("Runtime"), "memory_size": item.get("MemorySize")},
    )),
    "dynamodb_table": Listing("dynamodb", "list_tables", "TableNames", lambda name: (name, name, {})),
    "load_balancer": Listing("elbv2", "describe_load_balancers", "LoadBalancers", lambda item: (
        item["LoadBalancerArn"], item.get("LoadBalancerName"),
        {"type": item.get("Type"), "scheme": item.get("Scheme"), "dns_name": item.get("DNSName")},
    )),
    "ecs_cluster": Listing("ecs", "list_clusters", "clusterArns", lambda arn: (arn, _arn_name(arn), {})),
    "cloudfront_distribution": Listing("cloudfront", "list_distributions", "DistributionList.Items[]", lambda item: (
        item["Id"], item.get("DomainName"), {"enabled": item.get("Enabled"), "status": item.get("Status")},
    )),
    "route53_zone": Listing("route53", "list_hosted_zones", "HostedZones", lambda item: (
        item["Id"], item.get("Name"),
        {"private_zone": item.get("Config", {}).get("PrivateZone"),
         "record_count": item.get("ResourceRecordSetCount")},
    )),
    "sns_topic": Listing("sns", "list_topics", "Topics", lambda item: (
        item["TopicArn"], _arn_name(item["TopicArn"]), {},
    )),
    "sqs_queue": Listing("sqs", "list_queues", "QueueUrls", lambda url: (url, _arn_name(url), {})),
    "elasticache_cluster": Listing("elasticache", "describe_cache_clusters", "CacheClusters", lambda item: (
        item["CacheClusterId"], item["CacheClusterId"],
        {"node_type": item.get("CacheNodeType"), "engine": item.get("Engine"),
         "num_cache_nodes": item.get("NumCacheNodes")},
    )),
    "log_group": Listing("logs", "describe_log_groups", "logGroups", lambda item: (
        item["logGroupName"], item["logGroupName"],
        {"stored_bytes": item.get("storedBytes"), "retention_days": item.get("retentionInDays")},
    )),
}


class ResourceDiscovery:
    """Inventory of an account's resources in one region."""

    def __init__(self, session_factory: Optional[AWSSessionFactory] = None):
        self.session_factory = session_factory or AWSSessionFactory()

    def discover_all(
        self,
        session: boto3.Session,
        region: str,
        connection_id: str = ""
    ) -> Tuple[List[CloudResource], List[str]]:
        """
        List every tracked resource type. Blocking; call from a worker thread.

        Args:
            session: boto3 session for the connected account
            region: Region to enumerate (global services ignore it)
            connection_id: Owner stamped on each record

        Returns:
            Tuple of (resources, error codes of the types that failed)
        """
        resources: List[CloudResource] = []
        failures: List[str] = []
        for resource_type in LISTINGS:
            try:
                found = self.discover(session, region, resource_type, connection_id)
            except (ClientError, BotoCoreError) as error:
                logger.warning(f"Discovery of {resource_type} in {region} failed: {error}")
                failures.append(error_code(error) or type(error).__name__)
                continue
            resources.extend(found)

        logger.info(f"Discovered {len(resources)} resources in {region} ({len(failures)} types skipped)")
        return resources, failures

    def discover(
        self,
        session: boto3.Session,
        region: str,
        resource_type: str,
        connection_id: str = ""
    ) -> List[CloudResource]:
        """Paginated listing of a single resource type."""
        listing = LISTINGS[resource_type]
        client = self.session_factory.client(session, listing.service, region)
        record_region = "global" if listing.service in GLOBAL_SERVICES or listing.service == "s3" else region

        if client.can_paginate(listing.operation):
            items = client.get_paginator(listing.operation).paginate(**listing.params).search(listing.expression)
        else:
            items = getattr(client, listing.operation)(**listing.params).get(listing.expression, [])

        resources = []
        for item in items:
            if item is None:
                continue
            resource_id, name, metadata = listing.record(item)
            resources.append(CloudResource(
                connection_id=connection_id,
                resource_id=resource_id,
                resource_type=resource_type,
                region=record_region,
                name=name,
                metadata=_json_safe(metadata),
            ))
        return resources
