from setuptools import setup

install_req = [
    "numpy",
    "torch",
    "matplotlib",
]

extras_req = {
    "test": ["pytest"],
    "docs": ["sphinx", "furo"],
}

if __name__ == "__main__":
    setup(
        name="dampedhill",
        version="0.1.0",
        packages=["dampedhill"],
        python_requires=">=3.9",
        install_requires=install_req,
        extras_require=extras_req,
    )
