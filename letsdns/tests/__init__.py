"""Unit tests and testing tools for the letsdns package."""

from letsdns.tests.tools import DIRECTORY_URL

TEST_DOMAIN = "example.com"
TEST_DOMAINS = ["test1.example.com", "test2.example.com"]
TEST_EMAIL = "letsdns@example.com"
TEST_DIRECTORY = DIRECTORY_URL
TEST_NAMESERVERS = ["192.0.2.1", "192.0.2.2"]
