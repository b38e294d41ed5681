# Pydantic request/response schemas
