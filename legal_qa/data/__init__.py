# Packaged data files (tag keyword table).
