# Overlord Agent Modules
#
# remediation  - session loop, analyzer runner, fix generator, file mutator
# persistence  - SQLAlchemy models and the async session store
#
# The FastAPI app lives in modules.api (import it directly).
