[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "veld"
version = "1.0.0"
description = "Local development environments under HTTPS hostnames: run state, URL templates, a DNS/Caddy helper and a monitoring daemon"
requires-python = ">=3.10"
keywords = ["development", "caddy", "dns", "dnsmasq", "reverse-proxy", "daemon", "url-templates"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: Console",
    "Environment :: No Input/Output (Daemon)",
    "Framework :: AsyncIO",
    "Intended Audience :: Developers",
    "Operating System :: POSIX",
    "Operating System :: MacOS",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Software Development",
    "Topic :: Internet :: Name Service (DNS)",
    "Topic :: Internet :: Proxy Servers",
]
dependencies = [
    "httpx>=0.24",
    "platformdirs>=3.0",
]

[project.optional-dependencies]
test = [
    "pytest>=7.0",
    "pytest-asyncio>=0.21",
    "respx>=0.20",
]

[project.scripts]
veld-helper = "veld.helper_cli:main"
veld-daemon = "veld.daemon_cli:main"

[tool.hatch.build.targets.wheel]
packages = ["veld"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
