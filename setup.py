from setuptools import find_packages, setup

setup(
    name="jaxdogleg",
    version="0.0",
    description="Dogleg trust region nonlinear least squares in Jax",
    url="http://github.com/brentyi/jaxdogleg",
    author="brentyi",
    author_email="brentyi@berkeley.edu",
    license="BSD",
    packages=find_packages(include=["jaxdogleg", "jaxdogleg.*"]),
    package_data={"jaxdogleg": ["py.typed"]},
    python_requires=">=3.11",
    install_requires=[
        "tyro",
        "jax>=0.4.14",
        "jaxlib",
        "jax_dataclasses>=1.0.0",
        "numpy",
        "scipy",
        "overrides",
        "scikit-sparse",
        "loguru",
        "termcolor",
    ],
    extras_require={
        "testing": [
            "pytest",
            "pytest-cov",
        ],
        "type-checking": [
            "mypy",
            "types-termcolor",
        ],
    },
)
