"""Language-model services: contact extraction and search query interpretation."""
