"""Idempotent provisioning for Microsoft 365 tenants.

This package brings Entra ID users and groups, SharePoint columns, content types,
libraries and permissions, and Power Platform solutions and flows to a declared
state, reporting what it created, updated or left alone.
"""
