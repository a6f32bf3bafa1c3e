"""
Adapters exposing a served workflow through web frameworks.

The invocation driver works with ``httpx`` requests and responses. Adapters
translate the framework's native request into one and the response back.
"""
