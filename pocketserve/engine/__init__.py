# Model-agnostic inference engine
#
# This package wraps whatever on-device runtime serves the model behind one
# serialized interface that the HTTP layer can drive.
#
# Key components:
#   - adapters/          Runtime-specific back ends (echo, OpenAI-compatible)
#   - registry.py        Maps back-end names to adapters
#   - chat_types.py      Request / result / stream event types
#   - chat_engine.py     Exclusive owner of the adapter (load, warm-up, generate)
#   - packaged_model.py  Reads the bundled model descriptor
