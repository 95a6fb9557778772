import os
import sys

from setuptools import setup

# Don't import posthog_mobile module here, since deps may not be installed
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "posthog_mobile"))
from version import VERSION  # noqa: E402

long_description = """
PostHog is developer-friendly, self-hosted product analytics.
posthog-mobile is the telemetry core for app clients: events are queued on
the device, delivered in batches, and decorated with the feature flags the
server computed for the current user.

This package requires Python 3.9 or higher.
"""

install_requires = [
    "requests>=2.7,<3.0",
    "backoff>=1.10.0",
    "python-dateutil>=2.2",
    "distro>=1.5.0",
    "typing-extensions>=4.2.0",
]

tests_require = [
    "mock>=2.0.0",
    "freezegun==1.5.1",
    "parameterized>=0.8.1",
    "pytest",
]

setup(
    name="posthog-mobile",
    version=VERSION,
    url="https://github.com/posthog/posthog-python",
    author="Posthog",
    author_email="hey@posthog.com",
    maintainer="PostHog",
    maintainer_email="hey@posthog.com",
    license="MIT License",
    description="Capture events and read feature flags from app clients.",
    long_description=long_description,
    packages=["posthog_mobile"],
    python_requires=">=3.9",
    install_requires=install_requires,
    extras_require={"test": tests_require},
    classifiers=[
        "Development Status :: 5 - Production/Stable",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
        "Programming Language :: Python",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Programming Language :: Python :: 3.13",
    ],
)
