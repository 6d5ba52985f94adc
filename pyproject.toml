[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "ovnkube"
version = "0.1.0"
description = "Shared resource watches, service health checks and OVN load-balancer, address-set and namespace management for Kubernetes"
requires-python = ">=3.10"
dependencies = []
keywords = ["kubernetes", "ovn", "networking", "load-balancer", "watch", "healthcheck", "address-set"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Networking",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["ovnkube"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
