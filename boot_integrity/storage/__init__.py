"""Storage helpers: validation, hashing, temp directories, commands and the stock cache."""
