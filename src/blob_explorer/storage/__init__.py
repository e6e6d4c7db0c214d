"""Virtual folders and tree operations over a flat blob namespace."""
