import io
import os
import subprocess

from setuptools import setup, find_packages


# Utility function to read the README file.
# Used for the long_description.
def read(filename):
    with io.open(os.path.join(os.path.dirname(__file__), filename)) as f:
        return f.read()


# Utility function to determine version using git in a PEP-440 compatible way, fallback to version.txt for releases
def determine_version():
    dir_path = os.path.dirname(os.path.realpath(__file__))
    ver_file = os.path.join(dir_path, "version.txt")
    version = "0.0.0"
    if os.path.exists(ver_file):
        version = read(ver_file).strip()
    # If this is a release file and no git is found, use version.txt
    if not os.path.isdir(os.path.join(dir_path, ".git")):
        return version
    # Derive version from git
    try:
        output = subprocess.check_output(['git', 'describe', '--tags', '--dirty'], cwd=dir_path) \
            .decode('utf-8').strip().split('-')
        if len(output) == 1:
            return output[0]
        elif len(output) == 2:
            return "{}.dev0".format(output[0])
        else:
            release = 'dev' if len(output) == 4 and output[3] == 'dirty' else ''
            return "{}.{}{}+{}".format(output[0], release, output[1], output[2])
    except (OSError, subprocess.CalledProcessError):
        # finding the git version has utterly failed, use version.txt
        return version


extra_requirements = {
    "test": ["pytest"],
}

if __name__ == "__main__":
    setup(
        name="acmecron",
        version=determine_version(),
        description="Monthly certificate renewal using ACME with DNS-01 challenges on Cloudflare",
        license="ISC",
        keywords="acme letsencrypt dns-01 cloudflare",
        packages=find_packages(exclude=["tests"]),
        long_description=read('README.md'),
        long_description_content_type="text/markdown",
        classifiers=[
            "Development Status :: 4 - Beta",
            "Programming Language :: Python",
            "Programming Language :: Python :: 3",
            "Environment :: Console",
            "Topic :: Security :: Cryptography",
            "License :: OSI Approved :: ISC License (ISCL)",
        ],
        python_requires=">=3.8",
        install_requires=[
            "cryptography>=42",
            "dnspython>=2.0",
            "PyYAML",
            "cloudflare>=2.19,<2.20",
        ],
        extras_require=extra_requirements,
        entry_points={
            'console_scripts': [
                'acmecron=acmecron:main',
            ],
        },
    )
