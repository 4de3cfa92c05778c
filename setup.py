import glob
import os
import re

from setuptools import find_packages, setup

# approach stolen from sqlalchemy
with open(
    os.path.join(os.path.dirname(__file__), "contprof", "__init__.py")
) as version_file:
    VERSION = (
        re.compile(r""".*VERSION = ["'](.*?)['"]""", re.S)
        .match(version_file.read())
        .group(1)
    )


setup(
    name="contprof",
    version=VERSION,
    packages=find_packages(exclude=["tests", "tests.*"]),
    python_requires=">=3.10",
    install_requires=[
        "attrs>=22.2",
        "click",
        "python-json-logger>=3.1",
        "PyYAML",
        "requests",
        "statsd",
        "structlog>=22.1",
        "typing_extensions",
    ],
    extras_require={"test": ["pytest", "responses"]},
    include_package_data=True,
    data_files=[("contprof-test-config", glob.glob("etc/*test*"))],
    scripts=["bin/contprof-smoke-test.py"],
    zip_safe=False,
    description="Continuous profiling agent pushing folded stacks to a profiling backend",
    license="AGPLv3",
    keywords="profiling flamegraph",
)
