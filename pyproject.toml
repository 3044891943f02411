[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "topolvm"
version = "0.1.0"
description = "LVM volume management through device classes and thin pools, with logical volume and volume group services and admission mutators for capacity-aware scheduling"
requires-python = ">=3.10"
dependencies = []
keywords = ["lvm", "logical-volume", "thin-provisioning", "storage", "kubernetes", "admission-webhook"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Filesystems",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["topolvm"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
