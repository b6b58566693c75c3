"""Build peerbroker package."""
import setuptools

with open("README.md") as f:
    long_desc = f.read()

setuptools.setup(
    name="peerbroker",
    version="0.1.0",
    description="Websocket broker that pairs two peers and relays messages",
    long_description=long_desc,
    long_description_content_type="text/markdown",
    packages=setuptools.find_packages(exclude=["tests*", "testing*"]),
    classifiers=[
        "Programming Language :: Python :: 3",
        "Operating System :: OS Independent",
    ],
    python_requires=">=3.10",
    install_requires=[
        "click",
        "pydantic>=2",
        "tomli ; python_version<'3.11'",
        "tomli-w",
        "typing-extensions ; python_version<'3.11'",
        "websockets>=13",
    ],
    extras_require={
        "dev": [
            "cryptography",
            "pytest",
            "pytest-asyncio>=0.24",
            "pytest-timeout",
        ],
    },
    entry_points={
        "console_scripts": [
            "peerbroker=peerbroker.run:cli",
        ],
    },
)
