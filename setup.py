from setuptools import setup, find_packages


with open("README.md", "r") as fh:
    long_description = fh.read()

setup(
    name="quorum",
    version="0.1.0",
    author="Example Author",
    author_email="author@example.com",
    description="Coordinate k-of-n bitcoin multisig spends with PSBTs, output descriptors and bitcoind.",
    long_description=long_description,
    long_description_content_type="text/markdown",
    url="https://github.com/example/quorum",
    packages=find_packages(exclude=["examples"]),
    include_package_data=True,  # https://stackoverflow.com/a/56689053
    scripts=["quorumctl.py"],
    install_requires=["buidl>=0.2.25"],
    extras_require={"test": ["pytest", "pexpect"]},
    classifiers=[
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
    ],
    python_requires=">=3.8",
)
