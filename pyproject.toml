[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "kiss-matcher"
version = "0.1.0"
description = "Robust registration of 3-D point correspondences (GNC-TLS, Quatro, TLS translation) and k-d tree nearest-neighbour search"
requires-python = ">=3.10"
dependencies = ["numpy"]
keywords = [
    "point cloud",
    "registration",
    "kd-tree",
    "nearest neighbour",
    "robust estimation",
    "graduated non-convexity",
    "truncated least squares",
]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Science/Research",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Operating System :: OS Independent",
    "Topic :: Scientific/Engineering",
    "Topic :: Scientific/Engineering :: Mathematics",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["kiss_matcher"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"
