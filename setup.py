from setuptools import setup, find_namespace_packages

setup(
    name='widgetbridge',
    version='0.1.0',
    license="Apache 2.0",
    description="Host-widget bridge: sandboxed UI widgets talking JSON-RPC to a tool-calling host",
    long_description=open('README.md').read(),  # Ensure the README.md exists and is correct
    long_description_content_type='text/markdown',  # Use 'text/markdown' for Markdown files
    packages=find_namespace_packages(where="src", include=["widgetbridge", "widgetbridge.*"]),
    package_dir={"": "src"},
    install_requires=[
        "pydantic>=2.0",
        "jsonschema>=4.0",
        "httpx>=0.24",
        "websockets>=13.0",
        "click>=8.0",
        "PyYAML>=6.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.0",
            "pytest-asyncio>=0.21",
        ],
    },
    entry_points={
        'console_scripts': [
            'widgetbridge-host=widgetbridge.command.bridge_cli:run',
        ],
    },
    classifiers=[
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: Apache Software License",
        "Operating System :: OS Independent",
    ],
    python_requires='>=3.9',
)
