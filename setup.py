# SPDX-FileCopyrightText: 2024-2025 ModelCloud.ai
# SPDX-FileCopyrightText: 2024-2025 qubitium@modelcloud.ai
# SPDX-License-Identifier: Apache-2.0
# Contact: qubitium@modelcloud.ai, x.com/qubitium
from setuptools import find_packages, setup


# ---------------------------
# Env and versioning
# ---------------------------

version_vars = {}
exec("exec(open('fp8merge/version.py').read()); version=__version__", {}, version_vars)
fp8merge_version = version_vars["version"]

# ---------------------------
# setup()
# ---------------------------

setup(
    name="fp8merge",
    version=fp8merge_version,
    description="Dequantize block-quantized FP8 safetensors shards and merge them into a single BF16 shard",
    license="Apache-2.0",
    packages=find_packages(include=["fp8merge", "fp8merge.*"]),
    include_package_data=True,
    python_requires=">=3.10",
    install_requires=[
        "torch>=2.1.0",
        "numpy>=1.26.0",
        "logbar>=0.0.4",
    ],
    extras_require={
        "test": ["pytest>=8.2.2", "parameterized", "safetensors>=0.4.3"],
        "quality": ["ruff==0.13.0", "isort==6.0.1"],
    },
    entry_points={
        "console_scripts": [
            "fp8merge=fp8merge.cli.fp8merge:main",
        ],
    },
)
