import os

__version__ = "0.9.0"
__author__ = "Aviary contributors"
__url__ = "https://github.com/rmitchellscott/aviary"

# Populated at image build time.
__git_commit__ = os.getenv("GIT_COMMIT", "unknown")
