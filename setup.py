#!/usr/bin/python3
# SPDX-License-Identifier: LGPL-2.1-or-later

from setuptools import find_packages, setup

setup(
    name="looplab",
    version="1.0.0",
    description="Assemble UEFI-bootable disk images for direct or iSCSI boot",
    maintainer="looplab contributors",
    license="LGPLv2+",
    python_requires=">=3.9",
    packages=find_packages(".", exclude=["tests"]),
    entry_points={"console_scripts": ["looplab = looplab.__main__:main"]},
    extras_require={"test": ["pytest"]},
)
