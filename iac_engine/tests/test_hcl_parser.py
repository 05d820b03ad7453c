"""
Tests for the structural HCL parser.
"""

import pytest
from iac_engine.domain.hcl_models import ValueKind
from iac_engine.parsing.hcl_parser import (
    find_resources_by_type,
    get_blocks,
    get_property,
    has_property,
    parse,
)


def test_resources_keep_declaration_order_and_line_spans():
    """Resources come back in source order with 1-based inclusive line spans."""
    text = (
        'resource "aws_vpc" "main" {\n'
        '  cidr_block = "10.0.0.0/16"\n'
        '}\n'
        '\n'
        'resource "aws_subnet" "public" {\n'
        '  vpc_id     = aws_vpc.main.id\n'
        '  cidr_block = "10.0.1.0/24"\n'
        '}\n'
    )

    parsed = parse(text)

    assert [resource.full_name for resource in parsed.resources] == ['aws_vpc.main', 'aws_subnet.public']
    assert (parsed.resources[0].start_line, parsed.resources[0].end_line) == (1, 3)
    assert (parsed.resources[1].start_line, parsed.resources[1].end_line) == (5, 8)


def test_values_are_tagged_by_kind():
    """Literals are typed; references stay opaque expressions."""
    parsed = parse('''
resource "aws_instance" "web" {
  ami           = "ami-123"
  instance_type = var.instance_type
  count         = 2
  ebs_optimized = true
  cpu_credits   = null
  tags = {
    Name = "web"
  }
  security_groups = ["a", "b"]
}
''')
    web = parsed.resources[0]

    assert web.value('ami').kind == ValueKind.STRING
    assert web.value('instance_type').kind == ValueKind.EXPRESSION
    assert web.get('instance_type') == 'var.instance_type'
    assert web.value('count').kind == ValueKind.INT
    assert web.get('ebs_optimized') is True
    assert web.value('cpu_credits').kind == ValueKind.NULL
    assert web.get('tags.Name') == 'web'
    assert web.get('security_groups') == ['a', 'b']


def test_nested_blocks_and_repeats():
    """A single nested block is a map, repeated ones become a list."""
    parsed = parse('''
resource "aws_security_group" "web" {
  ingress {
    from_port = 80
    to_port   = 80
  }
  ingress {
    from_port = 443
    to_port   = 443
  }
  egress {
    from_port = 0
  }
}
''')
    group = parsed.resources[0]

    ingress = get_blocks(group, 'ingress')
    assert [rule['from_port'] for rule in ingress] == [80, 443]
    assert len(get_blocks(group, 'egress')) == 1
    assert get_blocks(group, 'missing') == []


def test_braces_inside_strings_and_comments_do_not_break_blocks():
    parsed = parse('''
# a comment with a { brace
resource "aws_s3_bucket" "logs" {
  bucket = "logs-${var.env}-{x}"  // trailing } comment
  /* block comment } */
}

resource "aws_sqs_queue" "jobs" {
  name = "jobs"
}
''')

    assert [resource.name for resource in parsed.resources] == ['logs', 'jobs']
    assert parsed.resources[0].get('bucket') == 'logs-${var.env}-{x}'


def test_heredoc_body_is_an_opaque_value():
    parsed = parse('''
resource "aws_iam_policy" "admin" {
  policy = <<EOF
{"Statement": [{"Action": "*", "Resource": "*"}]}
EOF
}
''')
    policy = parsed.resources[0].value('policy')

    assert policy.kind == ValueKind.EXPRESSION
    assert '"Action": "*"' in policy.value


def test_other_top_level_blocks_are_collected():
    parsed = parse('''
terraform {
  required_providers {
    aws = {
      source = "hashicorp/aws"
    }
  }
}

provider "aws" {
  region = "eu-west-1"
}

variable "env" {
  default = "dev"
}

locals {
  prefix = "app"
}

data "aws_ami" "ubuntu" {
  most_recent = true
}

module "vpc" {
  source = "terraform-aws-modules/vpc/aws"
}

output "vpc_id" {
  value = module.vpc.vpc_id
}
''')

    assert parsed.providers == ['aws']
    assert parsed.provider_blocks[0].get('region') == 'eu-west-1'
    assert parsed.variables['env']['default'].value == 'dev'
    assert parsed.locals['prefix'].value == 'app'
    assert parsed.data_sources[0].full_name == 'data.aws_ami.ubuntu'
    assert parsed.modules[0].full_name == 'module.vpc'
    assert 'vpc_id' in parsed.outputs
    assert parsed.resources == []


def test_malformed_input_degrades_with_warnings():
    """Unbalanced or unknown blocks never raise; they produce warnings."""
    parsed = parse('''
resource "aws_instance" "ok" {
  ami = "ami-1"
}

widget "x" {
}

resource "aws_instance" "broken" {
  ami = "ami-2"
''')

    assert parsed.resources[0].name == 'ok'
    assert parsed.parse_warnings


def test_empty_text_parses_to_empty_configuration():
    parsed = parse('')

    assert parsed.resources == []
    assert parsed.parse_warnings == []


def test_non_string_input_is_rejected():
    with pytest.raises(TypeError):
        parse(None)


def test_query_helpers():
    parsed = parse('''
resource "aws_instance" "a" {
  metadata_options {
    http_tokens = "required"
  }
}

resource "aws_instance" "b" {}

resource "aws_ebs_volume" "data" {
  size = 100
}
''')

    instances = find_resources_by_type(parsed, 'aws_instance')
    assert [instance.name for instance in instances] == ['a', 'b']
    assert has_property(instances[0], 'metadata_options.http_tokens')
    assert not has_property(instances[1], 'metadata_options.http_tokens')
    assert get_property(instances[0], 'metadata_options.http_tokens') == 'required'
    assert get_property(instances[1], 'metadata_options.http_tokens', 'optional') == 'optional'
    assert len(find_resources_by_type(parsed, 'aws_instance', 'aws_ebs_volume')) == 3


def test_deeply_nested_blocks_stay_reachable():
    parsed = parse('''
resource "aws_wafv2_web_acl" "main" {
  rule {
    statement {
      and_statement {
        statement {
          byte_match_statement {
            search_string = "/admin"
          }
        }
      }
    }
  }
}
''')

    acl = parsed.resources[0]
    path = 'rule.statement.and_statement.statement.byte_match_statement.search_string'
    assert acl.get(path) == '/admin'
    assert acl.end_line == 14


@pytest.mark.parametrize('count', [1, 4, 9])
def test_mixed_resources_are_all_recovered(count):
    """Heredocs, multi-line arrays and inline maps never hide or merge resources."""
    shapes = [
        'resource "aws_iam_policy" "p{i}" {{\n  policy = <<EOF\n{{"Statement": [{{"Resource": "*"}}]}}\nEOF\n}}\n',
        'resource "aws_security_group" "g{i}" {{\n  ports = [\n    22,\n    443,\n  ]\n}}\n',
        'resource "aws_s3_bucket" "b{i}" {{\n  tags = {{ Name = "b{i}", Env = "prod" }}\n}}\n',
    ]
    text = '\n'.join(shapes[i % len(shapes)].format(i=i) for i in range(count))
    expected = [
        ['aws_iam_policy.p{}', 'aws_security_group.g{}', 'aws_s3_bucket.b{}'][i % 3].format(i)
        for i in range(count)
    ]

    parsed = parse(text)

    assert len(parsed.resources) == count
    assert [resource.full_name for resource in parsed.resources] == expected


def test_trailing_commas_and_comments_in_arrays_are_dropped():
    parsed = parse('''
resource "aws_security_group" "web" {
  cidr_blocks = [
    "10.0.0.0/8",  # office
    "10.1.0.0/16",
  ]
}
''')

    assert parsed.resources[0].get('cidr_blocks') == ['10.0.0.0/8', '10.1.0.0/16']


def test_escaped_quote_before_braces_and_hash_stays_in_the_string():
    parsed = parse(
        'resource "aws_ssm_parameter" "banner" {\n'
        '  value = "a \\" } { # not a comment"  # real comment\n'
        '  type  = "String"\n'
        '}\n'
    )

    banner = parsed.resources[0]
    assert banner.get('value') == 'a " } { # not a comment'
    assert banner.get('type') == 'String'
    assert len(parsed.resources) == 1


def test_trailing_comment_is_not_part_of_the_value():
    parsed = parse('''
resource "aws_instance" "web" {
  instance_type = "t3.micro" # cheapest
  monitoring    = true // enabled
  count         = 2 /* fixed */
}
''')
    web = parsed.resources[0]

    assert web.get('instance_type') == 't3.micro'
    assert web.get('monitoring') is True
    assert web.get('count') == 2
