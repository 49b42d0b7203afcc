"""Data contracts shared by the runners and the session protocol."""
