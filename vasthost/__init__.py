"""
vasthost

Provisions an Ubuntu 22.04 machine into a GPU-capable container host for
Vast.ai, converts desktop installs into headless servers, and verifies the
result.
"""

APP_NAME: str = "Vast.ai Host Setup"
__version__: str = "2.0.0"
