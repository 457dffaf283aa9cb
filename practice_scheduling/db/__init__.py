"""Store interfaces and their in-memory and Supabase implementations."""
