[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "cosmosgremlin"
version = "0.1.0"
description = "Building blocks for a Gremlin client for Azure Cosmos DB: websocket connection, response headers, retries and metrics"
requires-python = ">=3.10"
dependencies = [
    "websocket-client",
]
keywords = ["gremlin", "cosmosdb", "graph", "database", "websocket", "retry"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Database :: Front-Ends",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["cosmosgremlin"]

[tool.pytest.ini_options]
addopts = "-ra"
