"""
Service layer.

Each public function is one operation of the sealed-bid protocol. Services
lock rows, validate, mutate and audit inside the caller's session; the caller
(route handler or CLI command) commits or rolls back.
"""
