"""Test helpers shared by the suite (fakes and environment seeding)."""
