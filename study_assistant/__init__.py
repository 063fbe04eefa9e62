"""Study Assistant: folders, documents and AI-generated study material."""
