"""
Issues module: anonymous reports and their lifecycle.

- Reporter identity is stored but never serialized; viewers only learn `is_mine`
- Status is a flat enum; closing an issue requires a resolution note
- Staff actions are recorded to the append-only audit trail
"""
