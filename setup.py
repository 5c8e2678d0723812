from setuptools import setup, find_packages

# Packages live under backend/src; the Lambda entry point under
# backend/lambda-functions is deployed alongside them and is not a package.
found_packages = find_packages(where="backend/src", include=["image_labeler", "image_labeler.*"])

setup(
    name="image-labeler",
    version="0.1.0",
    packages=found_packages,
    package_dir={"": "backend/src"},
    python_requires=">=3.10",
    install_requires=[
        "boto3>=1.40.1",
        "botocore>=1.40.1",
        "pydantic>=2.0",
        "python-dotenv>=1.0.0",
        "aws-opentelemetry-distro>=0.10.1",
        "opentelemetry-api",
        "opentelemetry-sdk",
        "opentelemetry-exporter-otlp-proto-http",
        "opentelemetry-propagator-aws-xray",
        "opentelemetry-sdk-extension-aws",
        "opentelemetry-instrumentation-botocore",
    ],
    extras_require={
        "test": [
            "pytest>=7.0",
            "pytest-asyncio>=0.23",
        ],
    },
)
