"""QuizArena: online assessments with practice/exam attempts and live team battles."""
