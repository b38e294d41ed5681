"""LabelBay - prepaid shipping labels."""
