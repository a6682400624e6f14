"""deb2qpkg: build self-installing QNAP QPKG containers from executables and foreign packages."""

__version__ = "0.1.0"
