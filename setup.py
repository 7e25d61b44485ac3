
from setuptools import setup, find_packages

setup(
    name="audio-rtsp",
    version="1.0.0",
    description="Persistent USB sound card names and per-device RTSP audio streams",
    author="Audio RTSP Team",
    packages=find_packages(exclude=["tests", "tests.*"]),
    install_requires=[
        "psutil>=5.9.0",
        "tabulate>=0.9.0",
        "pyudev>=0.24.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.0",
        ],
    },
    scripts=[
        "audio-rtsp-daemon.py",
    ],
    entry_points={
        'console_scripts': [
            # Rule authoring, needs root
            'usb-soundcard-mapper=rtspmic.mapper:main',
            'audio-rtsp-status=rtspmic.status:main',
        ],
    },
    data_files=[
        ('/etc/audio-rtsp', ['config.json']),
    ],
    classifiers=[
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: GPL License",
        "Operating System :: POSIX :: Linux",
    ],
)
