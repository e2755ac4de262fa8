"""URL capture pipeline: screenshots, PDFs and device mockups."""
